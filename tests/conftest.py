"""
Shared fixtures: a container runtime that runs the submitted file with this
interpreter, an event recorder standing in for the client socket, and a
fully wired service stack.
"""

import asyncio
import sys
from dataclasses import dataclass
from typing import List

import pytest

from runbox.core.languages import LanguageTable
from runbox.executor.base import ContainerRuntime, ExecSpec, ImagePullError
from runbox.services.cleanup import CleanupWorker
from runbox.services.controller import ExecutionController
from runbox.services.gateway import Gateway
from runbox.services.history import RunHistory
from runbox.services.launcher import SandboxLauncher
from runbox.services.registry import SessionRegistry
from runbox.services.storage import WorkspaceStorage
from runbox.settings import Settings


class LocalRuntime(ContainerRuntime):
    """Runs `<workdir>/<source file>` with the test interpreter instead of a container."""

    def __init__(self, images=("python:3.9-slim",), pull_lines=(), pull_rc=0):
        self.images = set(images)
        self.pull_lines = list(pull_lines)
        self.pull_rc = pull_rc
        self.pulled: List[str] = []
        self.spawned: List[str] = []
        self.stopped: List[str] = []
        self.removed: List[str] = []
        self.leftovers: List[str] = []

    async def image_exists(self, image):
        return image in self.images

    async def pull(self, image):
        self.pulled.append(image)
        for line in self.pull_lines:
            yield line
        if self.pull_rc:
            raise ImagePullError(image, self.pull_rc)
        self.images.add(image)

    def run_argv(self, spec: ExecSpec):
        return [sys.executable, "-u", str(spec.workdir / spec.cmd[-1])]

    async def spawn(self, spec):
        self.spawned.append(spec.container)
        return await super().spawn(spec)

    async def stop(self, name):
        self.stopped.append(name)
        return True

    async def remove(self, name):
        self.removed.append(name)
        if name in self.leftovers:
            self.leftovers.remove(name)
        return True

    async def list_containers(self, prefix):
        return [n for n in self.leftovers if n.startswith(prefix)]


class GatedRuntime(LocalRuntime):
    """Holds every launch at the image check until `gate` is set."""

    def __init__(self, **kw):
        super().__init__(**kw)
        self.gate = asyncio.Event()
        self.waiting = asyncio.Event()

    async def image_exists(self, image):
        self.waiting.set()
        await self.gate.wait()
        return await super().image_exists(image)


class Recorder:
    """Collects outbound events the way a connected client would see them."""

    def __init__(self):
        self.events: List[dict] = []

    async def __call__(self, event):
        self.events.append(event)

    def types(self):
        return [e["type"] for e in self.events]

    def of(self, kind):
        return [e for e in self.events if e["type"] == kind]

    def stdout(self, after_started=True):
        seen = not after_started
        out = []
        for e in self.events:
            if e["type"] == "started":
                seen = True
            elif seen and e["type"] == "output":
                out.append(e["data"])
        return "".join(out)

    async def wait_for(self, kind, count=1, timeout=10.0, **match):
        async def _poll():
            while True:
                hits = [e for e in self.of(kind) if all(e.get(k) == v for k, v in match.items())]
                if len(hits) >= count:
                    return hits[count - 1]
                await asyncio.sleep(0.01)
        return await asyncio.wait_for(_poll(), timeout)

    async def wait_for_output(self, text, timeout=10.0):
        async def _poll():
            while text not in self.stdout(after_started=False):
                await asyncio.sleep(0.01)
        await asyncio.wait_for(_poll(), timeout)


@dataclass
class Stack:
    settings: Settings
    runtime: LocalRuntime
    registry: SessionRegistry
    storage: WorkspaceStorage
    history: RunHistory
    launcher: SandboxLauncher
    controller: ExecutionController
    cleanup: CleanupWorker
    gateway: Gateway


@pytest.fixture
def settings(tmp_path):
    return Settings(
        temp_dir=tmp_path / "temp",
        history_url=f"sqlite:///{tmp_path / 'runbox.db'}",
        timeout_s=10,
        remove_retry_delay_s=0.01,
        teardown_wait_s=3,
    )


@pytest.fixture
def make_stack(settings):
    def _make(runtime=None, **overrides):
        s = settings.model_copy(update=overrides)
        rt = runtime or LocalRuntime()
        registry = SessionRegistry()
        storage = WorkspaceStorage(s.temp_dir)
        history = RunHistory(s.history_url)
        launcher = SandboxLauncher(registry, storage, rt, LanguageTable(s.languages, s.default_language))
        controller = ExecutionController(registry, launcher, rt, s, history)
        cleanup = CleanupWorker(storage, rt, s.container_prefix)
        gateway = Gateway(registry, controller, cleanup, s.default_language)
        return Stack(s, rt, registry, storage, history, launcher, controller, cleanup, gateway)
    return _make


@pytest.fixture
def stack(make_stack):
    return make_stack()


@pytest.fixture
def recorder():
    return Recorder()
