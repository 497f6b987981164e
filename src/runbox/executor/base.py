from __future__ import annotations

import asyncio
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, List

import structlog

log = structlog.get_logger(__name__)


class LaunchError(Exception):
    """A run could not be started. The message is safe to show to the client."""


class ImagePullError(LaunchError):
    def __init__(self, image: str, rc: int):
        super().__init__(f"Failed to pull Docker image {image}. Error code: {rc}")
        self.image = image
        self.rc = rc


@dataclass
class ExecSpec:
    container: str
    image: str
    cmd: List[str]
    workdir: Path


class ContainerRuntime:
    """
    Primitives of the local container runtime. Subclasses provide the
    concrete commands; spawning and teardown sequencing live here.
    """

    async def image_exists(self, image: str) -> bool: ...

    def pull(self, image: str) -> AsyncIterator[str]: ...

    def run_argv(self, spec: ExecSpec) -> List[str]: ...

    async def stop(self, name: str) -> bool: ...

    async def remove(self, name: str) -> bool: ...

    async def list_containers(self, prefix: str) -> List[str]: ...

    async def spawn(self, spec: ExecSpec) -> asyncio.subprocess.Process:
        argv = self.run_argv(spec)
        log.info("container.run", container=spec.container, cmd=" ".join(map(shlex.quote, argv)))
        return await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

    async def teardown(self, name: str, retry_delay: float = 0.5) -> bool:
        """Force-stop then remove; one delayed retry absorbs a remove racing the stop."""
        await self.stop(name)
        if await self.remove(name):
            return True
        await asyncio.sleep(retry_delay)
        if await self.remove(name):
            return True
        log.error("container.teardown_failed", container=name)
        return False
