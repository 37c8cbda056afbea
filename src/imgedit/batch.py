from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Sequence, TypeVar

from .tools.validation import validate_http_url

T = TypeVar("T")

# Units left running after a batch fails. Held here so the event loop's weak
# task references do not let them be collected mid-flight.
_abandoned: set[asyncio.Task] = set()


class BatchOrchestrator:
    """Fan a per-URL operation out over many URLs at once.

    Results come back in input order. The first failure fails the whole batch;
    sibling units still running are abandoned, not cancelled, so any cache
    writes they make still land. Concurrency is bounded only by input size.
    """

    def __init__(self, *, logger: logging.Logger | None = None) -> None:
        self.log = logger or logging.getLogger("imgedit.batch")

    async def run_batch(
        self,
        urls: Sequence[str],
        operation: Callable[[str], Awaitable[T]],
    ) -> list[T]:
        if not urls:
            return []
        validated = [validate_http_url(url) for url in urls]
        slots: list[T | None] = [None] * len(validated)

        async def _unit(index: int, url: str) -> None:
            slots[index] = await operation(url)

        tasks = [asyncio.create_task(_unit(i, url)) for i, url in enumerate(validated)]
        self.log.info("batch started with %d units", len(tasks))
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)

        failed = [i for i, task in enumerate(tasks) if task in done and task.exception() is not None]
        if failed:
            index = failed[0]
            exc = tasks[index].exception()
            self.log.warning(
                "batch unit %d (%s) failed, abandoning %d pending: %s",
                index, validated[index], len(pending), exc,
            )
            for task in pending:
                _abandoned.add(task)
                task.add_done_callback(self._drain)
            raise exc

        self.log.info("batch finished with %d results", len(slots))
        return list(slots)  # type: ignore[arg-type]

    def _drain(self, task: asyncio.Task) -> None:
        _abandoned.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.log.debug("abandoned batch unit failed: %s", exc)
