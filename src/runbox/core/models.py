from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional


class Status(str, Enum):
    IDLE = "idle"
    LAUNCHING = "launching"
    RUNNING = "running"
    TERMINATING = "terminating"
    CLOSED = "closed"


class Reason(str, Enum):
    """Why an execution is being torn down."""
    STOP = "stop"
    TIMEOUT = "timeout"
    REPLACE = "replace"
    DISCONNECT = "disconnect"


@dataclass(frozen=True)
class LanguageSpec:
    name: str
    filename: str          # e.g. main.py, Main.java
    image: str             # container image the code runs in
    run_command: tuple     # argv inside the container


@dataclass(eq=False)
class Execution:
    """One run of submitted code, owned by exactly one session."""
    run_id: str
    language: str
    container: str
    status: Status = Status.LAUNCHING
    process: Optional[asyncio.subprocess.Process] = None
    task: Optional[asyncio.Task] = None        # supervisor: launch, wait, drain
    alarm: Optional[asyncio.Task] = None       # single-shot timeout
    stdin_lock: asyncio.Lock = field(default_factory=asyncio.Lock)


@dataclass(eq=False)
class Session:
    id: str
    language: str
    status: Status = Status.IDLE
    workspace: Optional[Path] = None
    execution: Optional[Execution] = None
