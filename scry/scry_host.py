"""
The execution host: runs each script in a fresh worker process, races it
against a timer, and lets a newer submission supersede an older one.
"""

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from scry.scry_config import ScryConfig
from scry.scry_datatypes import TraceEvent

logger = logging.getLogger(__name__)

WORKER_MODULE = "scry.scry_worker"
# Upper bound for one protocol line; a longer message fails the run.
STREAM_LIMIT = 16 * 1024 * 1024
# Added to the worker's own drain grace before a finished worker is killed.
DRAIN_MARGIN_MS = 1000

OVERSIZE_MESSAGE = "Execution result too large to transfer"

Events = Tuple[TraceEvent, ...]


def timeout_event(timeout_ms: int) -> TraceEvent:
    return TraceEvent.error(f"Execution timed out after {timeout_ms}ms")


def _worker_env() -> dict:
    env = dict(os.environ)
    package_root = str(Path(__file__).resolve().parent.parent)
    existing = env.get("PYTHONPATH")
    env["PYTHONPATH"] = package_root + (os.pathsep + existing if existing else "")
    env["PYTHONIOENCODING"] = "utf-8"
    return env


class _Run:
    """One worker process and everything listening to it."""

    def __init__(self, on_unhandled: Optional[Callable[[TraceEvent], None]]):
        self.on_unhandled = on_unhandled
        self.process: Optional[asyncio.subprocess.Process] = None
        self.reader: Optional[asyncio.Task] = None
        self.started = asyncio.Event()
        self.result: asyncio.Future = asyncio.get_running_loop().create_future()
        self.superseded = False

    def settle(self, events: Optional[Events]) -> None:
        if not self.result.done():
            self.result.set_result(events)

    async def read(self) -> None:
        assert self.process is not None and self.process.stdout is not None
        stdout = self.process.stdout
        while True:
            try:
                line = await stdout.readline()
            except (ValueError, asyncio.LimitOverrunError):
                # The stream buffer cannot hold the message; nothing after it is readable.
                logger.warning("worker message exceeds %d bytes", STREAM_LIMIT)
                self.settle((TraceEvent.error(OVERSIZE_MESSAGE),))
                self.kill()
                break
            if not line:
                break
            try:
                message = json.loads(line)
            except ValueError:
                logger.warning("discarding malformed worker message: %r", line[:200])
                continue
            match message.get('type'):
                case 'started':
                    self.started.set()
                case 'events':
                    self.settle(tuple(TraceEvent.from_dict(e) for e in message.get('events', [])))
                case 'unhandled':
                    if self.on_unhandled is not None and not self.superseded:
                        self.on_unhandled(TraceEvent.from_dict(message['event']))
                case other:
                    logger.warning("unknown worker message type: %r", other)
        code = await self.process.wait()
        if not self.result.done():
            logger.warning("worker exited with code %s before answering", code)
            self.settle((TraceEvent.error(f"Execution process exited unexpectedly (exit code {code})"),))

    def kill(self) -> None:
        if self.process is not None and self.process.returncode is None:
            try:
                self.process.kill()
            except ProcessLookupError:
                pass

    def dispose(self) -> None:
        self.kill()
        if self.reader is not None and not self.reader.done():
            self.reader.cancel()


class ExecutionHost:
    """Submit source, get events. One run at a time; newer runs win."""

    def __init__(self, config: Optional[ScryConfig] = None,
                 on_unhandled: Optional[Callable[[TraceEvent], None]] = None):
        self.config = config or ScryConfig()
        self.on_unhandled = on_unhandled
        self._current: Optional[_Run] = None
        self._submission: Optional[asyncio.Task] = None
        self._drains: List[asyncio.Task] = []
        self._reapers: List[asyncio.Task] = []
        self._draining: List[_Run] = []

    def _dispose(self, run: _Run) -> None:
        run.dispose()
        if run.process is not None and run.process.returncode is None:
            reaper = asyncio.ensure_future(run.process.wait())
            self._reapers.append(reaper)
            reaper.add_done_callback(self._reapers.remove)

    @property
    def busy(self) -> bool:
        return self._current is not None and not self._current.result.done()

    def cancel(self) -> None:
        """Dispose the outstanding run, if any; its caller receives None."""
        run = self._current
        self._current = None
        if run is not None:
            run.superseded = True
            run.settle(None)
            self._dispose(run)

    async def run(self, source_code: str, timeout_ms: Optional[int] = None) -> Optional[Events]:
        timeout_ms = self.config.timeout_ms if timeout_ms is None else timeout_ms
        if not isinstance(timeout_ms, int) or isinstance(timeout_ms, bool) or timeout_ms <= 0:
            raise ValueError(f"timeout_ms must be a positive integer, got {timeout_ms!r}")

        self.cancel()
        self._kill_draining()
        run = _Run(self.on_unhandled)
        self._current = run
        try:
            return await self._execute(run, source_code, timeout_ms)
        except BaseException:
            self._dispose(run)
            raise
        finally:
            if self._current is run and run.result.done():
                self._current = None

    async def _execute(self, run: _Run, source_code: str, timeout_ms: int) -> Optional[Events]:
        run.process = await asyncio.create_subprocess_exec(
            self.config.python_executable, "-m", WORKER_MODULE,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
            env=_worker_env(),
            limit=STREAM_LIMIT,
        )
        if run.superseded:
            self._dispose(run)
            return None
        run.reader = asyncio.ensure_future(run.read())
        request = json.dumps({'source': source_code, 'config': self.config.worker_settings()})
        try:
            run.process.stdin.write(request.encode("utf-8"))
            await run.process.stdin.drain()
            run.process.stdin.close()
        except (BrokenPipeError, ConnectionResetError):
            # The reader reports the exit unless the run was superseded.
            if run.superseded:
                return None

        # The timer covers user code only; worker start-up has its own bound.
        started = asyncio.ensure_future(run.started.wait())
        try:
            await asyncio.wait({started, run.result}, timeout=self.config.startup_timeout_ms / 1000,
                               return_when=asyncio.FIRST_COMPLETED)
        finally:
            started.cancel()
        if not run.result.done() and not run.started.is_set():
            logger.warning("worker did not start within %dms", self.config.startup_timeout_ms)
            self._dispose(run)
            run.settle((TraceEvent.error("Execution process failed to start"),))
            return run.result.result()

        done, _ = await asyncio.wait({run.result}, timeout=timeout_ms / 1000)
        if not done:
            logger.debug("run timed out after %dms", timeout_ms)
            self._dispose(run)
            run.settle((timeout_event(timeout_ms),))
            return run.result.result()

        events = run.result.result()
        if events is not None and run.reader is not None and not run.reader.done():
            self._draining.append(run)
            drain = asyncio.ensure_future(self._drain(run))
            self._drains.append(drain)
            drain.add_done_callback(self._drains.remove)
        return events

    async def _drain(self, run: _Run) -> None:
        """Listen for detached failures until the worker exits, killing it
        once its grace period is over."""
        grace = (self.config.drain_grace_ms + DRAIN_MARGIN_MS) / 1000
        try:
            await asyncio.wait({run.reader}, timeout=grace)
            if run.process.returncode is None:
                logger.debug("worker still running %.1fs after its result, killing it", grace)
        finally:
            if run in self._draining:
                self._draining.remove(run)
            self._dispose(run)

    def _kill_draining(self) -> None:
        for run in list(self._draining):
            self._draining.remove(run)
            run.superseded = True
            self._dispose(run)

    def submit(self, source_code: str, callback: Callable[[Events], None], *,
               timeout_ms: Optional[int] = None, delay_ms: int = 0) -> Callable[[], None]:
        """Schedule a run and hand its events to `callback`.

        A later submission cancels this one if it is still waiting out
        `delay_ms` and supersedes it if it is running. Returns a function
        that disposes the submission.
        """
        if self._submission is not None and not self._submission.done():
            self._submission.cancel()

        async def submission():
            if delay_ms:
                await asyncio.sleep(delay_ms / 1000)
            events = await self.run(source_code, timeout_ms)
            if events is not None:
                callback(events)

        task = asyncio.ensure_future(submission())
        self._submission = task

        def dispose():
            if not task.done():
                task.cancel()
            if self._submission is task:
                self.cancel()

        return dispose

    async def aclose(self) -> None:
        """Dispose the current run, kill finished workers still draining and
        wait for every worker to exit."""
        if self._submission is not None and not self._submission.done():
            self._submission.cancel()
        self.cancel()
        self._kill_draining()
        for task in list(self._drains):
            task.cancel()
        pending = [t for t in (self._submission, *self._drains, *self._reapers) if t is not None]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
