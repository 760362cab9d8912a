# loader.py
from __future__ import annotations

import runpy
from pathlib import Path
from typing import List

from .errors import ConfigurationError, ShiplineError
from .model import PipelineDefinition
from .scheduler import validate_pipeline


def find_workflow_files(directory: str | Path = ".") -> List[Path]:
    """shipline_workflow.py first, then any other *_workflow.py."""
    current_dir = Path(directory)
    workflow_files = []

    default_workflow = current_dir / "shipline_workflow.py"
    if default_workflow.exists():
        workflow_files.append(default_workflow)

    for path in sorted(current_dir.glob("*_workflow.py")):
        if path != default_workflow:
            workflow_files.append(path)

    return workflow_files


def load_workflow(path: str | Path) -> PipelineDefinition:
    """
    Load and validate a pipeline from a python file path.

    The file must define either:
      - define() -> PipelineDefinition
      - PIPELINE = pipeline(...)

    The definition is validated (dependency graph, environments, action
    inputs) before it is returned, so a bad file never starts a run.
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix != ".py":
        raise ConfigurationError(f"Workflow must be a .py file, got: {wf_path.name}")

    module_name = f"shipline_workflow_{wf_path.stem}"
    try:
        globals_dict = runpy.run_path(str(wf_path), run_name=module_name)
    except ShiplineError:
        raise
    except Exception as e:
        raise ConfigurationError(
            f"Could not import workflow {wf_path.name}: {type(e).__name__}: {e}",
            details={"file": str(wf_path)},
        ) from e

    definition = None
    if "define" in globals_dict and callable(globals_dict["define"]):
        definition = globals_dict["define"]()
    elif "PIPELINE" in globals_dict:
        definition = globals_dict["PIPELINE"]

    if not isinstance(definition, PipelineDefinition):
        raise ConfigurationError(
            "Workflow must return/define a PipelineDefinition. "
            "Define define() -> pipeline(...) or PIPELINE = pipeline(...).",
            details={"file": str(wf_path)},
        )

    validate_pipeline(definition)
    return definition
