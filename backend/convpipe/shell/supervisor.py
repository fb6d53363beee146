"""Shell supervisor for the worker process hosting the pipeline API.

Owns the worker lifecycle from a separate parent process:

- start(): spawn with piped streams, log every output line, wait for readiness
- stop(): SIGTERM, wait for exit under a deadline, SIGKILL once if still alive
- SIGINT / SIGTERM / before-quit all route through the same stop()

Lifecycle: stopped -> starting -> running -> stopping -> stopped. An
unexpected exit from starting or running goes straight to stopped; the
worker is never restarted automatically. Coordination with the worker is
only through signals, exit status and its output streams.
"""

import asyncio
import logging
import signal
from collections import deque
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Sequence

from convpipe.config import Settings
from convpipe.errors import SupervisorError
from convpipe.shell.readiness import HealthProbe, OutputMarker, Readiness, StartupDelay

logger = logging.getLogger(__name__)


class WorkerState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


# Allowed lifecycle transitions; stopping never returns to running
LIFECYCLE_TRANSITIONS = {
    WorkerState.STOPPED: {WorkerState.STARTING},
    WorkerState.STARTING: {WorkerState.RUNNING, WorkerState.STOPPING, WorkerState.STOPPED},
    WorkerState.RUNNING: {WorkerState.STOPPING, WorkerState.STOPPED},
    WorkerState.STOPPING: {WorkerState.STOPPED},
}


class StopOutcome(str, Enum):
    GRACEFUL = "graceful"
    KILLED = "killed"
    NOT_RUNNING = "not_running"


class WorkerHandle:
    """Single-slot handle on a spawned worker process."""

    def __init__(self, process: asyncio.subprocess.Process, history: int = 200):
        self.process = process
        self.exited = asyncio.Event()
        self.returncode: Optional[int] = None
        self._lines: deque[str] = deque(maxlen=history)
        self._line_waiters: list[tuple[Callable[[str], bool], asyncio.Future]] = []

    @property
    def pid(self) -> int:
        return self.process.pid

    def feed_line(self, line: str) -> None:
        self._lines.append(line)
        for waiter in list(self._line_waiters):
            predicate, future = waiter
            if not future.done() and predicate(line):
                future.set_result(line)
                self._line_waiters.remove(waiter)

    async def wait_for_line(self, predicate: Callable[[str], bool]) -> str:
        """Return the first output line (already seen or future) matching predicate."""
        for line in self._lines:
            if predicate(line):
                return line
        future = asyncio.get_running_loop().create_future()
        waiter = (predicate, future)
        self._line_waiters.append(waiter)
        try:
            return await future
        finally:
            if waiter in self._line_waiters:
                self._line_waiters.remove(waiter)


class ShellSupervisor:
    """Start, watch and stop one worker process.

    Args:
        command: Worker argument vector
        readiness: Strategy awaited after spawn (default: fixed 2s delay)
        graceful_timeout: Seconds to wait for exit after SIGTERM
        kill_grace: Seconds to wait for exit after SIGKILL
        readiness_timeout: Upper bound on the readiness wait
        cwd: Working directory for the worker
        env: Environment for the worker (default: inherited)
    """

    def __init__(
        self,
        command: Sequence[str],
        *,
        readiness: Optional[Readiness] = None,
        graceful_timeout: float = 5.0,
        kill_grace: float = 2.0,
        readiness_timeout: float = 30.0,
        cwd: Optional[str | Path] = None,
        env: Optional[dict[str, str]] = None,
    ):
        self.command = list(command)
        self.readiness = readiness or StartupDelay()
        self.graceful_timeout = graceful_timeout
        self.kill_grace = kill_grace
        self.readiness_timeout = readiness_timeout
        self.cwd = cwd
        self.env = env

        self._state = WorkerState.STOPPED
        self._handle: Optional[WorkerHandle] = None
        self._stop_task: Optional[asyncio.Task] = None
        self._tasks: set[asyncio.Task] = set()
        self._stopped = asyncio.Event()
        self._stopped.set()
        self._signals: list[int] = []
        self.shutdown_requested = False

    @classmethod
    def from_settings(cls, config: Settings) -> "ShellSupervisor":
        sup = config.supervisor
        if sup.readiness == "health":
            readiness: Readiness = HealthProbe(
                config.health_url, interval=sup.health_interval, timeout=sup.readiness_timeout
            )
        elif sup.readiness == "marker":
            readiness = OutputMarker(sup.ready_marker)
        else:
            readiness = StartupDelay(sup.startup_delay)
        return cls(
            sup.worker_command,
            readiness=readiness,
            graceful_timeout=sup.graceful_timeout,
            kill_grace=sup.kill_grace,
            readiness_timeout=sup.readiness_timeout,
        )

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def handle(self) -> Optional[WorkerHandle]:
        return self._handle

    @property
    def pid(self) -> Optional[int]:
        return self._handle.pid if self._handle else None

    def _transition(self, target: WorkerState) -> None:
        if target not in LIFECYCLE_TRANSITIONS[self._state]:
            raise SupervisorError(f"Illegal worker transition {self._state.value} -> {target.value}")
        logger.debug(f"Worker state {self._state.value} -> {target.value}")
        self._state = target

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _clear(self, handle: WorkerHandle) -> None:
        if self._handle is handle:
            self._handle = None
        self._stopped.set()

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start(self) -> WorkerHandle:
        """Spawn the worker and return once it is ready.

        Raises:
            SupervisorError: Already started, spawn failed, worker exited during
                startup, or readiness was not reached in time (worker stopped)
        """
        if self._state != WorkerState.STOPPED:
            raise SupervisorError(f"Worker already {self._state.value}")

        self._transition(WorkerState.STARTING)
        logger.info(f"Starting worker: {' '.join(self.command)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd,
                env=self.env,
            )
        except OSError as e:
            self._transition(WorkerState.STOPPED)
            logger.error(f"Failed to start worker: {e}")
            raise SupervisorError(f"Failed to start worker: {e}") from e

        handle = WorkerHandle(process)
        self._handle = handle
        self._stopped.clear()
        self._spawn(self._pump(handle, process.stdout, "worker"))
        self._spawn(self._pump(handle, process.stderr, "worker:stderr"))
        self._spawn(self._watch(handle))
        logger.info(f"Worker spawned (pid {handle.pid}), awaiting readiness via {self.readiness!r}")

        await self._await_ready(handle)
        self._transition(WorkerState.RUNNING)
        logger.info(f"Worker running (pid {handle.pid})")
        return handle

    async def _await_ready(self, handle: WorkerHandle) -> None:
        ready = asyncio.create_task(self.readiness.wait(handle))
        exited = asyncio.create_task(handle.exited.wait())
        try:
            done, _ = await asyncio.wait(
                {ready, exited},
                timeout=self.readiness_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (ready, exited):
                if not task.done():
                    task.cancel()

        ready_error = ready.exception() if ready in done else None
        if ready in done and ready_error is None and self._state == WorkerState.STARTING:
            return

        if exited in done or self._state != WorkerState.STARTING:
            reason = f"worker exited during startup (code {handle.returncode})"
            logger.error(f"Worker did not become ready: {reason}")
            raise SupervisorError(f"Worker did not become ready: {reason}")

        if ready_error is not None:
            reason = f"readiness check failed: {ready_error}"
        else:
            reason = f"not ready after {self.readiness_timeout}s"
        logger.error(f"Worker did not become ready: {reason}")
        await self.stop()
        raise SupervisorError(f"Worker did not become ready: {reason}")

    async def _pump(self, handle: WorkerHandle, stream: asyncio.StreamReader, tag: str) -> None:
        while True:
            line = await stream.readline()
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                logger.info(f"[{tag}] {text}")
                handle.feed_line(text)

    async def _watch(self, handle: WorkerHandle) -> None:
        returncode = await handle.process.wait()
        handle.returncode = returncode
        handle.exited.set()

        if self._handle is handle and self._state in (WorkerState.STARTING, WorkerState.RUNNING):
            logger.error(f"Worker (pid {handle.pid}) exited unexpectedly with code {returncode}")
            self._clear(handle)
            self._transition(WorkerState.STOPPED)
        else:
            logger.info(f"Worker (pid {handle.pid}) exited with code {returncode}")

    # ------------------------------------------------------------------
    # Stop
    # ------------------------------------------------------------------

    async def stop(self, graceful_timeout: Optional[float] = None) -> StopOutcome:
        """Stop the worker; repeated or concurrent calls share one stop sequence.

        Args:
            graceful_timeout: Override for the SIGTERM deadline

        Returns:
            How the worker ended (NOT_RUNNING if there was nothing to stop)
        """
        if self._stop_task is None:
            if self._handle is None:
                return StopOutcome.NOT_RUNNING
            timeout = self.graceful_timeout if graceful_timeout is None else graceful_timeout
            self._stop_task = asyncio.create_task(self._terminate(self._handle, timeout))
            self._stop_task.add_done_callback(self._stop_finished)
        return await asyncio.shield(self._stop_task)

    def _stop_finished(self, task: asyncio.Task) -> None:
        if self._stop_task is task:
            self._stop_task = None

    async def _terminate(self, handle: WorkerHandle, timeout: float) -> StopOutcome:
        if handle.exited.is_set() and self._handle is not handle:
            # Exit already observed and handled by _watch
            return StopOutcome.NOT_RUNNING
        self._transition(WorkerState.STOPPING)
        logger.info(f"Stopping worker (pid {handle.pid})")

        outcome = StopOutcome.GRACEFUL
        if not handle.exited.is_set():
            self._send_graceful(handle)
            try:
                await asyncio.wait_for(handle.exited.wait(), timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Worker did not exit within {timeout}s, sending SIGKILL")
                self._force_kill(handle)
                outcome = StopOutcome.KILLED
                try:
                    await asyncio.wait_for(handle.exited.wait(), self.kill_grace)
                except asyncio.TimeoutError:
                    logger.error(f"Worker (pid {handle.pid}) still alive {self.kill_grace}s after SIGKILL")

        self._clear(handle)
        self._transition(WorkerState.STOPPED)
        logger.info(f"Worker stopped ({outcome.value})")
        return outcome

    def _send_graceful(self, handle: WorkerHandle) -> None:
        try:
            handle.process.terminate()
        except ProcessLookupError:
            pass

    def _force_kill(self, handle: WorkerHandle) -> None:
        try:
            handle.process.kill()
        except ProcessLookupError:
            pass

    async def wait_closed(self) -> None:
        """Wait until no worker is running (stopped or exited on its own)."""
        await self._stopped.wait()

    # ------------------------------------------------------------------
    # Shutdown triggers
    # ------------------------------------------------------------------

    def request_shutdown(self) -> asyncio.Task:
        """Schedule stop() from a synchronous context such as a signal handler."""
        self.shutdown_requested = True
        return self._spawn(self.stop())

    def _on_signal(self, signum: int) -> None:
        logger.info(f"Received {signal.Signals(signum).name}, shutting down worker")
        self.request_shutdown()

    async def before_quit(self) -> StopOutcome:
        """Application quit hook: the shell exits only after the worker is gone."""
        logger.info("Before-quit hook: shutting down worker")
        self.shutdown_requested = True
        return await self.stop()

    def install_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        loop = loop or asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, self._on_signal, signum)
            self._signals.append(signum)

    def remove_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        loop = loop or asyncio.get_running_loop()
        while self._signals:
            loop.remove_signal_handler(self._signals.pop())


async def run_shell(supervisor: ShellSupervisor) -> int:
    """Run the worker under supervision until a shutdown trigger or worker exit.

    Returns:
        Process exit code for the shell: 0 after a requested shutdown, 1 if
        the worker failed to start or exited on its own
    """
    supervisor.install_signal_handlers()
    try:
        try:
            await supervisor.start()
        except SupervisorError as e:
            # Front end may continue in a degraded state without the worker
            logger.error(f"Worker unavailable: {e}")
            return 1

        await supervisor.wait_closed()
        # A signal may have arrived while the stop sequence is in flight
        await supervisor.stop()
        return 0 if supervisor.shutdown_requested else 1
    finally:
        await supervisor.stop()
        supervisor.remove_signal_handlers()
