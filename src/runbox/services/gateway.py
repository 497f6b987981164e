from __future__ import annotations

import json
from typing import Any, Awaitable, Callable, Dict

import structlog
from pydantic import ValidationError

from ..core import messages
from ..core.models import Session
from ..core.utils import new_session_id
from .cleanup import CleanupWorker
from .controller import ExecutionController
from .registry import SessionRegistry

log = structlog.get_logger(__name__)

Emit = Callable[[Dict[str, Any]], Awaitable[None]]


class Gateway:
    """Routes one connection's frames to the controller. Never runs sandbox work itself."""

    def __init__(self, registry: SessionRegistry, controller: ExecutionController,
                 cleanup: CleanupWorker, default_language: str = "python"):
        self.registry = registry
        self.controller = controller
        self.cleanup = cleanup
        self.default_language = default_language

    async def open(self, emit: Emit) -> Session:
        session = self.registry.insert(Session(id=new_session_id(), language=self.default_language))
        log.info("session.connected", session_id=session.id)
        await emit(messages.connected(session.id))
        return session

    async def dispatch(self, session_id: str, raw: str, emit: Emit) -> None:
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as e:
            log.warning("session.bad_frame", session_id=session_id, err=str(e))
            await emit(messages.error("Error processing your request: message is not valid JSON"))
            return

        kind = payload.get("type") if isinstance(payload, dict) else None
        if kind not in messages.KNOWN_TYPES:
            log.warning("session.unknown_type", session_id=session_id, type=kind)
            await emit(messages.error(f"Unknown message type: {kind}"))
            return

        try:
            msg = messages.inbound_adapter.validate_python(payload)
        except ValidationError as e:
            log.warning("session.invalid_message", session_id=session_id, type=kind, errors=e.error_count())
            await emit(messages.error(f"Error processing your request: invalid '{kind}' message"))
            return

        try:
            if isinstance(msg, messages.RunMessage):
                await self.controller.run(session_id, msg.language, msg.code, emit)
            elif isinstance(msg, messages.InputMessage):
                await self.controller.send_input(session_id, msg.input, emit)
            else:
                await self.controller.stop(session_id, emit)
        except Exception as e:
            # the connection stays up whatever one request does
            log.exception("session.dispatch_failed", session_id=session_id, type=kind)
            await emit(messages.error(f"Error processing your request: {e}"))

    async def close(self, session_id: str) -> None:
        log.info("session.disconnected", session_id=session_id)
        await self.controller.disconnect(session_id)
        await self.cleanup.cleanup(session_id)

    async def close_all(self) -> None:
        for session_id in self.registry.ids():
            await self.close(session_id)
