import asyncio
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Set, Tuple

from centinel.core.errors import PoolShutdownError
from centinel.core.logger import logger

Job = Tuple[Callable[..., Awaitable[Any]], tuple, asyncio.Future]


class WorkerPool:
    """
    Bounded executor for coroutines, shared by batch fan-out and analysis dispatch.

    Admission follows the classic core/queue/max policy:
      1. fewer than `core_size` workers running -> start a worker
      2. backlog below `queue_capacity`         -> queue the job
      3. fewer than `max_size` workers running  -> start an extra worker
      4. otherwise                              -> run in the caller (backpressure)

    Workers keep draining the backlog and exit when it is empty.
    """

    def __init__(self, core_size: int = 10, max_size: int = 50, queue_capacity: int = 100,
                 name: str = "worker"):
        if core_size < 1 or max_size < core_size or queue_capacity < 0:
            raise ValueError("invalid pool bounds")
        self.core_size = core_size
        self.max_size = max_size
        self.queue_capacity = queue_capacity
        self.name = name
        self._backlog: Deque[Job] = deque()
        self._workers: Set[asyncio.Task] = set()
        self._idle = asyncio.Event()
        self._idle.set()
        self._shutdown = False
        self._completed = 0
        self._caller_runs = 0

    @property
    def is_shutdown(self) -> bool:
        return self._shutdown

    async def submit(self, fn: Callable[..., Awaitable[Any]], *args) -> asyncio.Future:
        """Schedule `fn(*args)` and return a future for its result."""
        if self._shutdown:
            raise PoolShutdownError(f"{self.name} pool is shut down")

        future = asyncio.get_running_loop().create_future()
        job = (fn, args, future)

        if len(self._workers) < self.core_size:
            self._spawn(job)
        elif len(self._backlog) < self.queue_capacity:
            self._backlog.append(job)
        elif len(self._workers) < self.max_size:
            self._spawn(job)
        else:
            self._caller_runs += 1
            logger.debug(f"{self.name} pool saturated, running in caller")
            await self._run(job)
        return future

    def _spawn(self, job: Job):
        self._idle.clear()
        task = asyncio.create_task(self._worker(job), name=f"{self.name}-{len(self._workers)}")
        self._workers.add(task)

    async def _worker(self, job: Optional[Job]):
        try:
            while job is not None:
                await self._run(job)
                job = self._backlog.popleft() if self._backlog else None
        finally:
            # No await between the empty-backlog check and deregistering,
            # so submit() never queues behind a worker that is about to exit
            self._workers.discard(asyncio.current_task())
            if not self._workers and not self._backlog:
                self._idle.set()

    async def _run(self, job: Job):
        fn, args, future = job
        if future.cancelled():
            return
        try:
            result = await fn(*args)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            if not future.cancelled():
                future.set_exception(e)
        else:
            if not future.cancelled():
                future.set_result(result)
        finally:
            self._completed += 1

    async def shutdown(self, grace: float = 60.0) -> bool:
        """
        Stop admitting work and wait up to `grace` seconds for running and
        queued jobs. Whatever is left after that is cancelled.
        Returns True when everything finished inside the grace period.
        """
        self._shutdown = True
        logger.info(f"{self.name} pool shutting down", extra={"pending": len(self._backlog), "workers": len(self._workers)})
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=grace)
            logger.info(f"{self.name} pool terminated")
            return True
        except asyncio.TimeoutError:
            logger.warning(f"{self.name} pool did not drain within {grace}s, cancelling remaining work")
            while self._backlog:
                _, _, future = self._backlog.popleft()
                future.cancel()
            workers = list(self._workers)
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            return False

    def stats(self) -> Dict[str, Any]:
        return {
            "workers": len(self._workers),
            "queued": len(self._backlog),
            "completed": self._completed,
            "caller_runs": self._caller_runs,
            "core_size": self.core_size,
            "max_size": self.max_size,
            "queue_capacity": self.queue_capacity,
            "shutdown": self._shutdown,
        }
