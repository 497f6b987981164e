from __future__ import annotations

import asyncio

import structlog

from ..executor.base import ContainerRuntime
from .storage import WorkspaceStorage

log = structlog.get_logger(__name__)


class CleanupWorker:
    """
    Reclaims what a closed session leaves behind: its workspace directory and
    any container still carrying its name. Works from the session id only, so
    it is safe after the registry entry is gone. Never raises.
    """

    def __init__(self, storage: WorkspaceStorage, runtime: ContainerRuntime, container_prefix: str):
        self.storage = storage
        self.runtime = runtime
        self.container_prefix = container_prefix

    async def cleanup(self, session_id: str) -> None:
        try:
            removed = await asyncio.to_thread(self.storage.remove_workspace, session_id)
            if removed:
                log.info("cleanup.workspace_removed", session_id=session_id)
        except OSError as e:
            log.error("cleanup.workspace_failed", session_id=session_id, err=str(e))

        prefix = f"{self.container_prefix}{session_id}-"
        try:
            leftovers = await self.runtime.list_containers(prefix)
        except OSError as e:
            log.error("cleanup.container_list_failed", session_id=session_id, err=str(e))
            return
        for name in leftovers:
            if not await self.runtime.remove(name):
                log.error("cleanup.container_left", session_id=session_id, container=name)
