from __future__ import annotations

from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


# --------- Inbound ---------

class RunMessage(BaseModel):
    type: Literal["run"]
    language: Optional[str] = None
    code: str


class InputMessage(BaseModel):
    type: Literal["input"]
    input: str


class StopMessage(BaseModel):
    type: Literal["stop"]


Inbound = Annotated[Union[RunMessage, InputMessage, StopMessage], Field(discriminator="type")]

inbound_adapter: TypeAdapter = TypeAdapter(Inbound)

KNOWN_TYPES = ("run", "input", "stop")


# --------- Outbound ---------

Event = Dict[str, Any]


def connected(session_id: str) -> Event:
    return {"type": "connected", "sessionId": session_id}


def started(session_id: str) -> Event:
    return {"type": "started", "sessionId": session_id}


def output(data: str) -> Event:
    return {"type": "output", "data": data}


def stderr(data: str) -> Event:
    return {"type": "error", "data": data}


def error(message: str) -> Event:
    return {"type": "error", "message": message}


def terminated(exit_code: int) -> Event:
    return {"type": "terminated", "exitCode": exit_code}


def stopped(message: str) -> Event:
    return {"type": "stopped", "message": message}


def input_processed() -> Event:
    return {"type": "inputProcessed", "success": True}
