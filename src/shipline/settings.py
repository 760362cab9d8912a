from __future__ import annotations
import os

DATABASE_URL = os.environ.get("SHIPLINE_DATABASE_URL", "sqlite:///.shipline/shipline.db")
MAX_WORKERS = int(os.environ["SHIPLINE_MAX_WORKERS"]) if os.environ.get("SHIPLINE_MAX_WORKERS") else None
STEP_TIMEOUT = float(os.environ.get("SHIPLINE_STEP_TIMEOUT", "3600"))
APPROVAL_POLL_SECONDS = float(os.environ.get("SHIPLINE_APPROVAL_POLL", "2"))
WORK_ROOT = os.environ.get("SHIPLINE_WORK_ROOT", ".shipline/work")
SECRET_MASK = os.environ.get("SHIPLINE_SECRET_MASK", "***")
