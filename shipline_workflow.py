# shipline_workflow.py
# Build, test, tag and ship the docs site: staging is open, production needs sign-off.
from __future__ import annotations

import os
import subprocess
import urllib.request

from shipline.dsl import action, environment, job, pipeline, sh
from shipline.release import GitSourceControl, ReleaseController, release_step
from shipline.rollout import HealthProbe, RolloutController, RolloutPlan, rollout_step
from shipline.store import Store


class IngressRouter:
    """Canary weight via the nginx ingress annotation."""

    def __init__(self, namespace: str):
        self.namespace = namespace

    def set_weight(self, target: str, weight: int) -> None:
        subprocess.run(
            [
                "kubectl", "-n", self.namespace, "annotate", "--overwrite", "ingress", f"{target}-canary",
                f"nginx.ingress.kubernetes.io/canary-weight={weight}",
            ],
            check=True,
        )


def http_ok(url: str):
    def check() -> bool:
        with urllib.request.urlopen(url, timeout=5) as resp:
            return resp.status == 200
    return check


def define():
    releases = ReleaseController(GitSourceControl(), Store())
    rollouts = RolloutController(IngressRouter("docs"))

    return pipeline(
        "main",
        # Lint and test run side by side once the runtime is set up
        job(
            "lint",
            action("Checkout", "checkout", repository=".", fetch_depth=0),
            sh("Ruff check", "ruff check ."),
        ),
        job(
            "test",
            action("Checkout", "checkout", repository=".", fetch_depth=0),
            action("Python", "setup-runtime", runtime="python", version="3.12"),
            sh("Install package", "pip install -e '.[test]'"),
            sh("Run pytest", "pytest -q", retries=1),
        ),

        # Static build, shared by both deploys
        job(
            "build",
            sh("Build site", "mkdocs build --strict --site-dir dist"),
            needs=["lint", "test"],
        ),

        job(
            "deploy-staging",
            action(
                "Sync to bucket", "object-storage-sync",
                credentials="DEPLOY_KEY", target="docs-staging", path="dist/",
            ),
            needs=["build"],
            environment="staging",
            concurrency_group="docs-deploy",
        ),

        # Tag only after staging is live
        job(
            "release",
            release_step(releases, artifacts=["dist/"]),
            needs=["deploy-staging"],
        ),

        job(
            "deploy-production",
            action(
                "Apply manifests", "cluster-apply",
                credentials="DEPLOY_KEY", target="docs", path="deploy/k8s/",
            ),
            rollout_step(
                rollouts,
                RolloutPlan(
                    target="docs",
                    probes=(HealthProbe("homepage", http_ok("https://docs.example.com/")),),
                    dwell=60,
                    probe_interval=10,
                ),
            ),
            needs=["release"],
            environment="production",
            concurrency_group="docs-deploy",
        ),

        environments=[
            environment("staging", secrets={"DEPLOY_KEY": os.environ.get("STAGING_DEPLOY_KEY", "")}),
            environment(
                "production",
                approvers=["release-manager", "sre-oncall"],
                secrets={"DEPLOY_KEY": os.environ.get("PROD_DEPLOY_KEY", "")},
            ),
        ],
        approval_timeout=3600,
    )
