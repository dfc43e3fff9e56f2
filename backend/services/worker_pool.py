"""
Bounded worker pool for blocking process-control calls.

systemctl/psutil calls block; they run here so the event loop (schedule
evaluation, API requests) never waits on them. Each call carries its own
timeout and surfaces an overrun as ProcessControlError.
"""
import asyncio
import functools
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, Optional

from constants import SupervisorConfig
from exceptions import ProcessControlError

logger = logging.getLogger(__name__)


class WorkerPool:
    """Thread pool with a fixed number of workers and per-call timeouts"""

    def __init__(self, max_workers: int = SupervisorConfig.MAX_WORKERS,
                 default_timeout: float = SupervisorConfig.CONTROL_TIMEOUT_SECONDS):
        self.max_workers = max_workers
        self.default_timeout = default_timeout
        self._executor: Optional[ThreadPoolExecutor] = None
        self.in_flight = 0
        # Calls that overran their timeout but were already executing, by target
        self._overrun: Dict[str, Future] = {}

    def start(self):
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.max_workers,
                thread_name_prefix="process-control",
            )
            logger.info(f"Worker pool started ({self.max_workers} workers)")

    def stop(self):
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
            logger.info("Worker pool stopped")

    @property
    def running(self) -> bool:
        return self._executor is not None

    async def run(
        self,
        fn: Callable[..., Any],
        *args: Any,
        timeout: Optional[float] = None,
        operation: str = "call",
        target: str = "",
    ) -> Any:
        """
        Run a blocking callable on the pool and await its result.

        Args:
            fn: Blocking callable
            *args: Positional arguments for fn
            timeout: Seconds to wait (defaults to the pool's control timeout)
            operation: Operation label used in errors (start, stop, status ...)
            target: Instance name the call concerns, for error details

        Raises:
            ProcessControlError: If the call does not finish within the timeout
        """
        self.start()
        loop = asyncio.get_running_loop()
        limit = timeout if timeout is not None else self.default_timeout

        call = self._executor.submit(functools.partial(fn, *args))
        self.in_flight += 1
        try:
            return await asyncio.wait_for(asyncio.wrap_future(call, loop=loop), timeout=limit)
        except asyncio.TimeoutError:
            # A call that already started cannot be cancelled; keep it for settle()
            if not call.done():
                self._overrun[target] = call
            logger.error(f"⏱️ {operation} on {target or 'facility'} exceeded {limit:.1f}s")
            raise ProcessControlError(operation, target, f"{operation} timed out after {limit:.1f}s")
        finally:
            self.in_flight -= 1

    async def settle(self, target: str, timeout: float) -> bool:
        """
        Wait for an overrun call on a target to finish.

        Args:
            target: Instance name passed to the call that timed out
            timeout: Seconds to wait for it

        Returns:
            True if nothing is left executing for the target
        """
        call = self._overrun.pop(target, None)
        if call is None or call.done():
            return True

        done, _ = await asyncio.wait({asyncio.wrap_future(call)}, timeout=timeout)
        if not done:
            logger.error(f"Overrun call on {target} still executing after another {timeout:.1f}s")
            self._overrun[target] = call
            return False

        error = call.exception()
        if error is not None:
            logger.warning(f"Overrun call on {target} finished with error: {error}")
        else:
            logger.info(f"Overrun call on {target} finished late")
        return True
