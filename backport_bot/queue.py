import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, List, Optional, Set, Tuple

from backport_bot.config import DEFAULT_MAX_ACTIVE_JOBS


@dataclass(frozen=True)
class JobResult:
    """Outcome of one queued job, handed to the job's continuation."""
    identifier: str
    ok: bool
    value: Any = None
    error: Optional[BaseException] = None


Runner = Callable[[], Awaitable[Any]]
Continuation = Callable[[JobResult], Awaitable[None]]
Job = Tuple[str, Runner, Optional[Continuation]]


class ExecutionQueue:
    """
    Runs at most `max_active` jobs at once, the rest wait in a FIFO backlog.

    A job is admitted under an identifier and stays admitted until its runner and
    continuation have both settled. Entering an identifier that is already admitted
    is silently ignored.

    There is no cancellation or timeout: a runner that never returns keeps its slot.
    """

    def __init__(self, max_active: int = DEFAULT_MAX_ACTIVE_JOBS):
        if max_active < 1:
            raise ValueError("max_active must be at least 1")
        self.max_active = max_active
        self.active_idents: Set[str] = set()
        self._backlog: Deque[Job] = deque()
        self._active = 0
        self._tasks: Set[asyncio.Task] = set()
        self._empty_listeners: List[Callable[[], None]] = []
        self._empty = asyncio.Event()
        self._empty.set()

    @property
    def active(self) -> int:
        return self._active

    @property
    def pending(self) -> int:
        return len(self._backlog)

    def is_admitted(self, identifier: str) -> bool:
        return identifier in self.active_idents

    def on_empty(self, listener: Callable[[], None]):
        self._empty_listeners.append(listener)

    async def wait_until_empty(self):
        await self._empty.wait()

    def enter_queue(self, identifier: str, run: Runner, on_result: Optional[Continuation] = None) -> bool:
        """
        Admit a job unless one with the same identifier is already running or queued.

        Must be called from a running event loop, otherwise RuntimeError is raised and
        nothing is admitted. Returns True when the job was admitted.
        """
        loop = asyncio.get_running_loop()
        if identifier in self.active_idents:
            logging.debug(f"Job {identifier} is already queued, ignoring")
            return False

        self.active_idents.add(identifier)
        self._empty.clear()
        job = (identifier, run, on_result)
        if self._active >= self.max_active:
            logging.info(f"Adding to queue: {identifier}")
            self._backlog.append(job)
        else:
            self._start(loop, job)
        return True

    def _start(self, loop: asyncio.AbstractEventLoop, job: Job):
        task = loop.create_task(self._run(job))
        self._active += 1
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, job: Job):
        identifier, run, on_result = job
        try:
            value = await run()
            result = JobResult(identifier=identifier, ok=True, value=value)
        except Exception as e:
            logging.exception(f"Job {identifier} failed: {e}")
            result = JobResult(identifier=identifier, ok=False, error=e)

        if on_result is not None:
            try:
                await on_result(result)
            except Exception as e:
                logging.exception(f"Result handler for job {identifier} failed: {e}")

        self._run_next(identifier)

    def _run_next(self, last_identifier: str):
        self.active_idents.discard(last_identifier)
        self._active -= 1
        if self._backlog and self._active < self.max_active:
            self._start(asyncio.get_running_loop(), self._backlog.popleft())
        elif self._active == 0 and not self._backlog:
            self._empty.set()
            for listener in list(self._empty_listeners):
                listener()
