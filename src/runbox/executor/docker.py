from __future__ import annotations

import asyncio
from typing import AsyncIterator, List, Tuple

import structlog

from .base import ContainerRuntime, ExecSpec, ImagePullError
from ..settings import Settings

log = structlog.get_logger(__name__)


class DockerRuntime(ContainerRuntime):
    """
    Runs each execution as `docker run -i --rm` under fixed limits:
    memory, cpu share, pids, no network, workspace mounted read/write.
    """

    def __init__(self, settings: Settings):
        self.docker_bin = settings.docker_bin
        self.memory = settings.memory
        self.cpus = settings.cpus
        self.pids_limit = settings.pids_limit
        self.mount_point = settings.mount_point

    async def _exec(self, *args: str) -> Tuple[int, str]:
        proc = await asyncio.create_subprocess_exec(
            self.docker_bin, *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        out, _ = await proc.communicate()
        return proc.returncode, out.decode("utf-8", errors="replace")

    # ---------- images ----------

    async def image_exists(self, image: str) -> bool:
        rc, _ = await self._exec("image", "inspect", image)
        return rc == 0

    async def pull(self, image: str) -> AsyncIterator[str]:
        proc = await asyncio.create_subprocess_exec(
            self.docker_bin, "pull", image,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        try:
            while True:
                line = await proc.stdout.readline()
                if not line:
                    break
                yield line.decode("utf-8", errors="replace")
            rc = await proc.wait()
        finally:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
        if rc != 0:
            raise ImagePullError(image, rc)

    # ---------- containers ----------

    def run_argv(self, spec: ExecSpec) -> List[str]:
        return [
            self.docker_bin, "run",
            "--name", spec.container,
            "-i",
            "--rm",
            "-v", f"{spec.workdir.resolve()}:{self.mount_point}",
            "-w", self.mount_point,
            "--memory", self.memory,
            "--cpus", self.cpus,
            "--pids-limit", str(self.pids_limit),
            "--network", "none",
            spec.image,
            *spec.cmd,
        ]

    async def stop(self, name: str) -> bool:
        try:
            rc, out = await self._exec("stop", "--time=0", name)
        except OSError as e:
            log.error("container.stop_error", container=name, err=str(e))
            return False
        if rc != 0:
            log.debug("container.stop_nonzero", container=name, rc=rc, out=out.strip())
        return rc == 0

    async def remove(self, name: str) -> bool:
        try:
            rc, out = await self._exec("rm", "-f", name)
        except OSError as e:
            log.error("container.remove_error", container=name, err=str(e))
            return False
        # --rm may already have reaped it
        if rc == 0 or "No such container" in out:
            return True
        log.warning("container.remove_nonzero", container=name, rc=rc, out=out.strip())
        return False

    async def list_containers(self, prefix: str) -> List[str]:
        rc, out = await self._exec(
            "ps", "-a", "--filter", f"name={prefix}", "--format", "{{.Names}}"
        )
        if rc != 0:
            log.warning("container.list_failed", prefix=prefix, rc=rc, out=out.strip())
            return []
        return [n for n in out.split() if n.startswith(prefix)]
