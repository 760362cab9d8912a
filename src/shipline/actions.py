# actions.py
"""
Built-in external actions.

Each supported action is one frozen dataclass whose fields are its input
schema. `ACTIONS` maps the name used in a workflow (`uses=`) to the class;
`resolve_action` builds and validates the variant when the pipeline is
loaded, so an unknown name or a bad input is a ConfigurationError before
any job runs.

Actions are opaque to the scheduler: each one renders a command line that
the compute runner executes like any shell step.
"""
from __future__ import annotations

import dataclasses
import shlex
from dataclasses import dataclass
from typing import ClassVar, Dict, Mapping, Type

from .errors import ConfigurationError
from .model import ActionStep

CREDENTIALS_ENV = "SHIPLINE_CREDENTIALS"
PROVIDERS = ("aws", "azure", "gcp")


def _q(value: str) -> str:
    return shlex.quote(str(value))


def _check_provider(action: str, provider: str) -> None:
    if provider not in PROVIDERS:
        raise ConfigurationError(
            f"action '{action}': unknown provider '{provider}'",
            details={"providers": list(PROVIDERS)},
        )


@dataclass(frozen=True)
class Action:
    name: ClassVar[str] = ""

    def command(self) -> str:
        raise NotImplementedError

    def secret_env(self) -> Dict[str, str]:
        """env var name -> secret name, injected for this call only."""
        return {}

    def validate(self) -> None:
        pass


@dataclass(frozen=True)
class CloudAction(Action):
    """Fixed schema shared by the cloud deploy actions."""
    credentials: str
    target: str
    path: str
    provider: str = "aws"

    def secret_env(self) -> Dict[str, str]:
        return {CREDENTIALS_ENV: self.credentials}

    def validate(self) -> None:
        _check_provider(self.name, self.provider)


# ---------------------------------------------------------------------
# Source / toolchain
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Checkout(Action):
    name: ClassVar[str] = "checkout"
    repository: str
    ref: str = "HEAD"
    fetch_depth: str = "0"  # 0 = full history (tags needed for versioning)

    def validate(self) -> None:
        if not str(self.fetch_depth).isdigit():
            raise ConfigurationError(f"checkout: fetch_depth must be a number, got {self.fetch_depth!r}")

    def command(self) -> str:
        depth = "" if str(self.fetch_depth) == "0" else f" --depth {int(self.fetch_depth)}"
        return (
            f"git clone --no-checkout{depth} {_q(self.repository)} . "
            f"&& git checkout {_q(self.ref)}"
        )


@dataclass(frozen=True)
class SetupRuntime(Action):
    name: ClassVar[str] = "setup-runtime"
    runtime: str
    version: str

    def command(self) -> str:
        tool = f"{self.runtime}@{self.version}"
        return f"mise install {_q(tool)} && mise use {_q(tool)}"


@dataclass(frozen=True)
class CloudLogin(Action):
    name: ClassVar[str] = "cloud-login"
    credentials: str
    provider: str = "aws"

    def secret_env(self) -> Dict[str, str]:
        return {CREDENTIALS_ENV: self.credentials}

    def validate(self) -> None:
        _check_provider(self.name, self.provider)

    def command(self) -> str:
        if self.provider == "azure":
            return f'az login --service-principal --federated-token "${CREDENTIALS_ENV}"'
        if self.provider == "gcp":
            return (
                f'printf "%s" "${CREDENTIALS_ENV}" > .gcp-key.json '
                "&& gcloud auth activate-service-account --key-file=.gcp-key.json"
            )
        return "aws sts get-caller-identity"


# ---------------------------------------------------------------------
# Cloud deploy
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class ObjectStorageSync(CloudAction):
    name: ClassVar[str] = "object-storage-sync"

    def command(self) -> str:
        if self.provider == "azure":
            return f"az storage blob sync -s {_q(self.path)} -c {_q(self.target)}"
        if self.provider == "gcp":
            return f"gsutil -m rsync -r -d {_q(self.path)} {_q('gs://' + self.target)}"
        return f"aws s3 sync {_q(self.path)} {_q('s3://' + self.target)} --delete"


@dataclass(frozen=True)
class CdnInvalidate(CloudAction):
    name: ClassVar[str] = "cdn-invalidate"
    path: str = "/*"

    def command(self) -> str:
        if self.provider == "azure":
            return f"az cdn endpoint purge --ids {_q(self.target)} --content-paths {_q(self.path)}"
        if self.provider == "gcp":
            return f"gcloud compute url-maps invalidate-cdn-cache {_q(self.target)} --path {_q(self.path)}"
        return (
            f"aws cloudfront create-invalidation --distribution-id {_q(self.target)} "
            f"--paths {_q(self.path)}"
        )


@dataclass(frozen=True)
class WebAppDeploy(CloudAction):
    name: ClassVar[str] = "webapp-deploy"

    def command(self) -> str:
        if self.provider == "azure":
            return f"az webapp deploy --ids {_q(self.target)} --src-path {_q(self.path)}"
        if self.provider == "gcp":
            return f"gcloud app deploy {_q(self.path)} --project {_q(self.target)} --quiet"
        return (
            f"aws elasticbeanstalk update-environment --environment-name {_q(self.target)} "
            f"--version-label {_q(self.path)}"
        )


@dataclass(frozen=True)
class ClusterApply(CloudAction):
    name: ClassVar[str] = "cluster-apply"

    def command(self) -> str:
        return f"kubectl --context {_q(self.target)} apply -f {_q(self.path)}"


ACTIONS: Mapping[str, Type[Action]] = {
    cls.name: cls
    for cls in (
        Checkout,
        SetupRuntime,
        CloudLogin,
        ObjectStorageSync,
        CdnInvalidate,
        WebAppDeploy,
        ClusterApply,
    )
}


def resolve_action(step: ActionStep, *, job: str | None = None) -> Action:
    """Build the action variant for `step`, validating its inputs."""
    cls = ACTIONS.get(step.uses)
    if cls is None:
        raise ConfigurationError(
            f"unknown action '{step.uses}'",
            job=job,
            step=step.name,
            details={"known": sorted(ACTIONS)},
        )

    fields = {f.name: f for f in dataclasses.fields(cls)}
    unknown = sorted(set(step.with_) - set(fields))
    if unknown:
        raise ConfigurationError(
            f"action '{step.uses}' got unexpected inputs {unknown}",
            job=job,
            step=step.name,
            details={"accepted": sorted(fields)},
        )
    missing = sorted(
        name
        for name, f in fields.items()
        if f.default is dataclasses.MISSING and name not in step.with_
    )
    if missing:
        raise ConfigurationError(
            f"action '{step.uses}' is missing required inputs {missing}",
            job=job,
            step=step.name,
        )

    action = cls(**dict(step.with_))
    try:
        action.validate()
    except ConfigurationError as e:
        e.job, e.step = job, step.name
        raise
    return action
