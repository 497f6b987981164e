from __future__ import annotations

import asyncio
import codecs
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

from ..core import messages
from ..core.models import Execution, Reason, Status
from ..core.utils import container_name, new_run_id
from ..executor.base import ContainerRuntime, LaunchError
from ..settings import Settings
from .history import RunHistory, RunStatus
from .launcher import SandboxLauncher
from .registry import SessionRegistry

log = structlog.get_logger(__name__)

Emit = Callable[[Dict[str, Any]], Awaitable[None]]

CHUNK = 4096
TIMEOUT_EXIT = 124

SESSION_NOT_FOUND = "Session not found. Please refresh the page and try again."
STILL_INITIALIZING = "Code execution is still initializing. Please wait a moment and try again."
NO_EXECUTION = "No active code execution. Please run your code first."
NOTHING_TO_STOP = "No active execution to stop."
STOPPED_BY_USER = "Execution stopped by user"
REPLACED = "Execution replaced by a new run."


async def _discard(event: Dict[str, Any]) -> None:
    return None


class ExecutionController:
    """
    Owns every run end to end.

    Per run there is one supervisor task (launch, wait, drain), two pump
    tasks (stdout, stderr) and one alarm task. A run ends on natural exit,
    stop, timeout, replacement or disconnect; whoever first releases the
    execution from the registry performs the ending, every later caller
    sees nothing to release and returns.
    """

    def __init__(self, registry: SessionRegistry, launcher: SandboxLauncher,
                 runtime: ContainerRuntime, settings: Settings,
                 history: Optional[RunHistory] = None):
        self.registry = registry
        self.launcher = launcher
        self.runtime = runtime
        self.history = history
        self.timeout_s = settings.timeout_s
        self.retry_delay = settings.remove_retry_delay_s
        self.teardown_wait = settings.teardown_wait_s
        self.prefix = settings.container_prefix
        self._last: Dict[str, Execution] = {}

    # ------------ control path ------------

    async def run(self, session_id: str, language: Optional[str], code: str, emit: Emit) -> Optional[Execution]:
        session = self.registry.get(session_id)
        if session is None:
            await emit(messages.error(SESSION_NOT_FOUND))
            return None

        # the old run is completely gone before the new one exists
        await self.terminate(session_id, Reason.REPLACE, emit)
        previous = self._last.get(session_id)
        if previous is not None:
            await self._settle(previous)

        run_id = new_run_id()
        ex = Execution(
            run_id=run_id,
            language=language or session.language,
            container=container_name(self.prefix, session_id, run_id),
        )
        if self.history:
            await asyncio.to_thread(self.history.record, run_id, session_id, ex.language)
        if not self.registry.attach(session_id, ex):
            log.warning("execution.attach_refused", session_id=session_id, run_id=run_id)
            await self._finish(ex, RunStatus.KILLED, None, "refused")
            return None

        self._last[session_id] = ex
        log.info("execution.launching", session_id=session_id, run_id=run_id, language=ex.language)
        ex.task = asyncio.create_task(self._supervise(session_id, ex, code, emit), name=f"run-{run_id}")
        return ex

    async def send_input(self, session_id: str, text: str, emit: Emit) -> bool:
        session = self.registry.get(session_id)
        if session is None:
            await emit(messages.error(SESSION_NOT_FOUND))
            return False
        ex = session.execution
        if ex is None:
            await emit(messages.error(NO_EXECUTION))
            return False
        if ex.status is Status.LAUNCHING:
            await emit(messages.error(STILL_INITIALIZING))
            return False
        proc = ex.process
        if ex.status is not Status.RUNNING or proc is None or proc.stdin is None:
            await emit(messages.error(NO_EXECUTION))
            return False

        try:
            data = (text + "\n").encode("utf-8")
        except UnicodeEncodeError as e:
            log.warning("execution.input_unencodable", session_id=session_id, run_id=ex.run_id, err=str(e))
            await emit(messages.error("Error sending input to process: input is not valid UTF-8 text"))
            return False

        async with ex.stdin_lock:
            try:
                proc.stdin.write(data)
                await proc.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                log.warning("execution.stdin_failed", session_id=session_id, run_id=ex.run_id, err=str(e))
                await emit(messages.error(f"Error sending input to process: {e}"))
                return False
        await emit(messages.input_processed())
        return True

    async def stop(self, session_id: str, emit: Emit) -> bool:
        log.info("execution.stop_requested", session_id=session_id)
        if await self.terminate(session_id, Reason.STOP, emit):
            return True
        await emit(messages.stopped(NOTHING_TO_STOP))
        return False

    async def disconnect(self, session_id: str) -> None:
        try:
            await self.terminate(session_id, Reason.DISCONNECT, _discard)
            last = self._last.pop(session_id, None)
            if last is not None:
                # a timeout or natural exit may still be finishing on its own task
                await self._settle(last)
        finally:
            self.registry.delete(session_id)

    async def terminate(self, session_id: str, reason: Reason, emit: Emit) -> bool:
        """Returns False when there was nothing to terminate."""
        ex = self.registry.release(session_id)
        if ex is None:
            return False
        await self._teardown(session_id, ex, reason, emit)
        return True

    # ------------ run lifecycle ------------

    async def _supervise(self, session_id: str, ex: Execution, code: str, emit: Emit) -> None:
        await emit(messages.output(f"Starting {ex.language} code execution...\r\n"))
        try:
            proc = await self.launcher.launch(session_id, ex, code, emit)
        except LaunchError as e:
            await self._abort(session_id, ex, str(e), emit)
            return
        except Exception as e:
            log.exception("execution.launch_crashed", session_id=session_id, run_id=ex.run_id)
            await self._abort(session_id, ex, f"Error executing code: {e}", emit)
            return

        ex.process = proc
        if not self.registry.mark(session_id, ex, Status.RUNNING):
            # released while the process was being spawned
            self._kill(proc)
            await proc.wait()
            return

        ex.alarm = asyncio.create_task(self._alarm(session_id, ex, emit), name=f"alarm-{ex.run_id}")
        if self.history:
            await asyncio.to_thread(self.history.started, ex.run_id)
        log.info("execution.started", session_id=session_id, run_id=ex.run_id, pid=proc.pid)
        await emit(messages.started(session_id))

        pumps = [
            asyncio.create_task(self._pump(proc.stdout, messages.output, emit)),
            asyncio.create_task(self._pump(proc.stderr, messages.stderr, emit)),
        ]
        try:
            await asyncio.gather(*pumps)
            rc = await proc.wait()
        finally:
            for p in pumps:
                p.cancel()

        if self.registry.release(session_id, ex) is None:
            # stop / timeout / replace / disconnect owns the ending
            return
        ex.status = Status.CLOSED
        self._cancel_alarm(ex)
        log.info("execution.exited", session_id=session_id, run_id=ex.run_id, exit_code=rc)
        await self._finish(ex, RunStatus.FINISHED if rc == 0 else RunStatus.FAILED, rc)
        await emit(messages.terminated(rc))

    async def _abort(self, session_id: str, ex: Execution, message: str, emit: Emit) -> None:
        """Ends a run that never got a process: error + terminated{1}."""
        if self.registry.release(session_id, ex) is None:
            return
        ex.status = Status.CLOSED
        log.error("execution.launch_failed", session_id=session_id, run_id=ex.run_id, err=message)
        await self._finish(ex, RunStatus.FAILED, 1, message)
        await emit(messages.error(message))
        await emit(messages.terminated(1))

    async def _alarm(self, session_id: str, ex: Execution, emit: Emit) -> None:
        await asyncio.sleep(self.timeout_s)
        if self.registry.release(session_id, ex) is None:
            return
        log.warning("execution.timeout", session_id=session_id, run_id=ex.run_id, timeout_s=self.timeout_s)
        await self._teardown(session_id, ex, Reason.TIMEOUT, emit)

    async def _pump(self, stream: Optional[asyncio.StreamReader], event, emit: Emit) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(CHUNK)
            if not chunk:
                tail = decoder.decode(b"", final=True)
                if tail:
                    await emit(event(tail))
                return
            text = decoder.decode(chunk)
            if text:
                await emit(event(text))

    async def _teardown(self, session_id: str, ex: Execution, reason: Reason, emit: Emit) -> None:
        """kill -> wait for the streams to drain -> stop + remove the container -> report."""
        ex.status = Status.TERMINATING
        log.info("execution.terminating", session_id=session_id, run_id=ex.run_id, reason=reason.value)
        self._cancel_alarm(ex)

        if ex.process is not None:
            self._kill(ex.process)
        elif ex.task is not None:
            # still launching
            ex.task.cancel()
        await self._wait_task(ex.task)

        await self.runtime.teardown(ex.container, self.retry_delay)
        ex.status = Status.CLOSED

        if reason is Reason.TIMEOUT:
            await self._finish(ex, RunStatus.TIMEOUT, TIMEOUT_EXIT, f"timeout_{self.timeout_s:g}s")
            await emit(messages.error(
                f"Execution timed out after {self.timeout_s:g} seconds. The process has been terminated."
            ))
            await emit(messages.terminated(TIMEOUT_EXIT))
        elif reason is Reason.STOP:
            await self._finish(ex, RunStatus.KILLED, None, "stopped")
            await emit(messages.stopped(STOPPED_BY_USER))
        elif reason is Reason.REPLACE:
            await self._finish(ex, RunStatus.KILLED, None, "replaced")
            await emit(messages.stopped(REPLACED))
        else:
            await self._finish(ex, RunStatus.KILLED, None, "disconnected")

    # ------------ helpers ------------

    async def _wait_task(self, task: Optional[asyncio.Task]) -> None:
        if task is None or task.done() or task is asyncio.current_task():
            return
        done, _ = await asyncio.wait({task}, timeout=self.teardown_wait)
        if not done:
            log.warning("execution.supervisor_stuck", task=task.get_name())
            task.cancel()
            await asyncio.wait({task}, timeout=self.teardown_wait)

    async def _settle(self, ex: Execution) -> None:
        # whoever released `ex` already cancelled a sleeping alarm; a fired one is mid-teardown
        for task in (ex.alarm, ex.task):
            await self._wait_task(task)

    def _cancel_alarm(self, ex: Execution) -> None:
        alarm = ex.alarm
        if alarm is not None and alarm is not asyncio.current_task() and not alarm.done():
            alarm.cancel()

    def _kill(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        try:
            proc.kill()
        except ProcessLookupError:
            pass

    async def _finish(self, ex: Execution, status: RunStatus, exit_code: Optional[int], reason: Optional[str] = None) -> None:
        if self.history:
            await asyncio.to_thread(self.history.finished, ex.run_id, status, exit_code, reason)
