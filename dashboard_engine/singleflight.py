import asyncio
import threading
from concurrent.futures import Future
from typing import Any, Awaitable, Callable, Dict, List, Set

from .logging_config import get_logger

logger = get_logger(__name__)


class SingleFlight:
    """Per-key single-flight execution.

    The computation runs as a task on the loop of the first caller. Its outcome
    is published through a thread-safe future, so callers on other threads'
    event loops can join it too. The registration for a key is dropped before
    the outcome is published, so a failed episode never blocks the next attempt.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._in_flight: Dict[str, "Future[Any]"] = {}
        self._tasks: Set["asyncio.Task[None]"] = set()
        self.stats: Dict[str, int] = {"started": 0, "joined": 0}

    async def run_once(self, key: str, compute_fn: Callable[[], Awaitable[Any]]) -> Any:
        with self._lock:
            shared = self._in_flight.get(key)
            if shared is None:
                shared = Future()
                task = asyncio.get_running_loop().create_task(self._run(key, compute_fn, shared))
                self._tasks.add(task)
                task.add_done_callback(self._forget)
                self._in_flight[key] = shared
                self.stats["started"] += 1
                logger.debug("singleflight_started", key=key)
            else:
                self.stats["joined"] += 1
                logger.debug("singleflight_joined", key=key)
        # shield: a cancelled caller detaches without aborting the shared computation
        return await asyncio.shield(asyncio.wrap_future(shared))

    async def _run(
        self,
        key: str,
        compute_fn: Callable[[], Awaitable[Any]],
        shared: "Future[Any]",
    ) -> None:
        try:
            result = await compute_fn()
        except Exception as exc:
            self._release(key)
            shared.set_exception(exc)
        except BaseException:
            # cancelled with its loop; joiners see the cancellation
            self._release(key)
            shared.cancel()
            raise
        else:
            self._release(key)
            shared.set_result(result)

    def _release(self, key: str) -> None:
        with self._lock:
            self._in_flight.pop(key, None)

    def _forget(self, task: "asyncio.Task[None]") -> None:
        with self._lock:
            self._tasks.discard(task)

    def in_flight(self) -> List[str]:
        with self._lock:
            return list(self._in_flight.keys())
