from __future__ import annotations
import time, uuid


def new_session_id() -> str:
    return str(uuid.uuid4())


def new_run_id() -> str:
    return f"{int(time.time())}-{uuid.uuid4().hex[:12]}"


def container_name(prefix: str, session_id: str, run_id: str) -> str:
    # session id stays the naming root so cleanup can find every run's container
    return f"{prefix}{session_id}-{run_id}"
