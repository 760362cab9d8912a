# gate.py
"""
Environment gate: approval state for jobs bound to protected environments.

The gate owns the ApprovalRequest lifecycle. It reports decisions to the
scheduler and never touches the run record itself. Requests are closed only
by an external approval action (`approve` / `reject`, reached from the CLI
or the control-plane API); when a Store is attached those actions can come
from another process and are picked up by `poll`.
"""
from __future__ import annotations

import logging
import threading
import uuid
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Union

from .errors import ApprovalError
from .model import ApprovalRequest, ApprovalState, Environment, Job, utcnow
from .store import Store

logger = logging.getLogger(__name__)


class Decision(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    PENDING = "pending"


class EnvironmentGate:
    def __init__(self, store: Optional[Store] = None):
        self.store = store
        self._requests: Dict[str, ApprovalRequest] = {}
        self._lock = threading.Lock()

    # -------------------- Decisions --------------------

    @staticmethod
    def authorize(
        job: Job,
        environment: Environment,
        approvals: Union[ApprovalRequest, Iterable[str], None] = None,
    ) -> Decision:
        """
        ALLOW when no approvers are required or every required approver has
        granted; DENY only after an explicit rejection; PENDING otherwise.
        """
        if isinstance(approvals, ApprovalRequest):
            if approvals.state is ApprovalState.REJECTED:
                return Decision.DENY
            granted = set(approvals.granted)
        else:
            granted = set(approvals or ())

        required = set(environment.required_approvers)
        if not required or required <= granted:
            return Decision.ALLOW
        return Decision.PENDING

    def poll(self, request_id: str, job: Job, environment: Environment) -> Decision:
        return self.authorize(job, environment, self.get(request_id))

    # -------------------- Lifecycle --------------------

    def open_request(self, run_id: str, job: Job, environment: Environment) -> ApprovalRequest:
        """Create the request for (run, job), or return the one already open."""
        with self._lock:
            existing = self._find(run_id, job.name)
            if existing is not None:
                return existing

            req = ApprovalRequest(
                request_id=uuid.uuid4().hex,
                run_id=run_id,
                job=job.name,
                environment=environment.name,
                required=frozenset(environment.required_approvers),
            )
            self._save(req)
        logger.info(
            "approval %s opened for job '%s' -> %s (approvers: %s)",
            req.request_id, job.name, environment.name, ", ".join(sorted(req.required)),
        )
        return req

    def approve(self, request_id: str, identity: str) -> ApprovalRequest:
        def grant(req: ApprovalRequest) -> None:
            self._check_approver(req, identity)
            req.granted.add(identity)
            if req.required <= req.granted:
                req.state = ApprovalState.APPROVED
                req.closed_at = utcnow()

        req = self._update(request_id, grant)
        logger.info("approval %s granted by %s (%s)", request_id, identity, req.state.value)
        return req

    def reject(self, request_id: str, identity: str) -> ApprovalRequest:
        def deny(req: ApprovalRequest) -> None:
            self._check_approver(req, identity)
            req.state = ApprovalState.REJECTED
            req.rejected_by = identity
            req.closed_at = utcnow()

        req = self._update(request_id, deny)
        logger.info("approval %s rejected by %s", request_id, identity)
        return req

    def get(self, request_id: str) -> Optional[ApprovalRequest]:
        if self.store is not None:
            return self.store.get_approval(request_id)
        return self._requests.get(request_id)

    def list(self, state: Optional[ApprovalState] = None) -> List[ApprovalRequest]:
        if self.store is not None:
            return self.store.list_approvals(state)
        return [r for r in self._requests.values() if state is None or r.state is state]

    # -------------------- Internals --------------------

    def _update(self, request_id: str, change: Callable[[ApprovalRequest], None]) -> ApprovalRequest:
        """Apply an approve/reject change atomically (store-side when a Store is attached)."""
        def checked(req: ApprovalRequest) -> None:
            self._check_open(req)
            change(req)

        if self.store is not None:
            req = self.store.update_approval(request_id, checked)
        else:
            with self._lock:
                req = self._requests.get(request_id)
                if req is not None:
                    checked(req)
        if req is None:
            raise ApprovalError(f"unknown approval request '{request_id}'", details={"reason": "unknown"})
        return req

    @staticmethod
    def _check_approver(req: ApprovalRequest, identity: str) -> None:
        if identity not in req.required:
            raise ApprovalError(
                f"'{identity}' is not a required approver for {req.environment}",
                job=req.job,
                details={"request_id": req.request_id, "reason": "forbidden"},
            )

    @staticmethod
    def _check_open(req: ApprovalRequest) -> None:
        if not req.is_open:
            raise ApprovalError(
                f"approval request '{req.request_id}' is already {req.state.value}",
                job=req.job,
                details={"reason": "closed"},
            )

    def _find(self, run_id: str, job: str) -> Optional[ApprovalRequest]:
        if self.store is not None:
            return self.store.find_approval(run_id, job)
        for req in self._requests.values():
            if req.run_id == run_id and req.job == job:
                return req
        return None

    def _save(self, req: ApprovalRequest) -> None:
        if self.store is not None:
            self.store.save_approval(req)
        else:
            self._requests[req.request_id] = req
