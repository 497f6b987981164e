from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict

import structlog

from ..core import messages
from ..core.languages import LanguageTable
from ..core.models import Execution
from ..executor.base import ContainerRuntime, ExecSpec, ImagePullError, LaunchError
from .registry import SessionRegistry
from .storage import WorkspaceStorage

log = structlog.get_logger(__name__)

Emit = Callable[[Dict[str, Any]], Awaitable[None]]


class SandboxLauncher:
    """
    Prepares one run: workspace + source file, image availability, then the
    sandboxed process itself. Any failure surfaces as LaunchError.
    """

    def __init__(self, registry: SessionRegistry, storage: WorkspaceStorage,
                 runtime: ContainerRuntime, languages: LanguageTable):
        self.registry = registry
        self.storage = storage
        self.runtime = runtime
        self.languages = languages

    async def launch(self, session_id: str, execution: Execution, code: str, emit: Emit) -> asyncio.subprocess.Process:
        spec = self.languages.resolve(execution.language)

        try:
            workdir = await asyncio.to_thread(self.storage.write_source, session_id, spec.filename, code)
        except (OSError, ValueError) as e:
            # ValueError: source text that cannot be written as UTF-8
            log.error("launch.workspace_failed", session_id=session_id, err=str(e))
            raise LaunchError(f"Error executing code: {e}") from e
        self.registry.update(session_id, workspace=workdir)

        await self.ensure_image(spec.image, spec.name, emit)

        try:
            return await self.runtime.spawn(ExecSpec(
                container=execution.container,
                image=spec.image,
                cmd=list(spec.run_command),
                workdir=workdir,
            ))
        except OSError as e:
            log.error("launch.spawn_failed", session_id=session_id, container=execution.container, err=str(e))
            raise LaunchError(f"Error executing Docker: {e}") from e

    async def ensure_image(self, image: str, language: str, emit: Emit) -> None:
        try:
            if await self.runtime.image_exists(image):
                log.debug("image.present", image=image)
                return
        except OSError as e:
            log.error("image.inspect_failed", image=image, err=str(e))
            await emit(messages.stderr(f"Error checking Docker image: {e}\r\n"))
            raise LaunchError(f"Failed to prepare Docker image for {language}. Please try again.") from e

        log.info("image.pull", image=image)
        await emit(messages.output(f"Setting the environment for {image} Please wait...\r\n"))
        try:
            async for line in self.runtime.pull(image):
                await emit(messages.output(line))
        except ImagePullError as e:
            log.error("image.pull_failed", image=image, rc=e.rc)
            await emit(messages.stderr(f"{e}\r\n"))
            raise LaunchError(f"Failed to prepare Docker image for {language}. Please try again.") from e
        except OSError as e:
            log.error("image.pull_failed", image=image, err=str(e))
            await emit(messages.stderr(f"Error pulling Docker image: {e}\r\n"))
            raise LaunchError(f"Failed to prepare Docker image for {language}. Please try again.") from e

        log.info("image.pulled", image=image)
        await emit(messages.output(f"\r\nSuccessfully pulled Docker image {image}. Running your code...\r\n"))
