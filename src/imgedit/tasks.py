from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from .tools.errors import RemoteTaskError, TaskTimeoutError

DEFAULT_POLL_INTERVAL = 5.0
DEFAULT_TIMEOUT = 5 * 60.0

# The inference service reports "SUCCEED"; accept the longer spelling too.
_SUCCESS_STATUSES = {"SUCCEED", "SUCCEEDED"}
_FAILED_STATUSES = {"FAILED"}


class TaskState(str, Enum):
    SUBMITTED = "submitted"
    POLLING = "polling"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass
class RemoteTask:
    task_id: str
    deadline: float
    poll_interval: float
    state: TaskState = TaskState.SUBMITTED
    poll_count: int = 0
    remote_status: str = ""


@dataclass(frozen=True)
class TaskResult:
    task_id: str
    image_url: str
    poll_count: int


StatusFetcher = Callable[[str], Awaitable[dict[str, Any]]]


class TaskPoller:
    """Drive a remote asynchronous job to a terminal state.

    ``fetch_status`` performs one status check and returns the decoded payload
    ``{"task_status", "output_images", "error": {"code", "message"}}``. Errors it
    raises propagate immediately; only a still-pending status is retried, at a
    fixed interval with no backoff.
    """

    def __init__(
        self,
        fetch_status: StatusFetcher,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        timeout: float = DEFAULT_TIMEOUT,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        clock: Callable[[], float] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.fetch_status = fetch_status
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.sleep = sleep or asyncio.sleep
        self.clock = clock or time.monotonic
        self.log = logger or logging.getLogger("imgedit.tasks")

    async def poll(self, task_id: str) -> TaskResult:
        task = RemoteTask(
            task_id=task_id,
            deadline=self.clock() + self.timeout,
            poll_interval=self.poll_interval,
        )
        self.log.info("polling task %s (timeout %.0fs, interval %.1fs)", task_id, self.timeout, self.poll_interval)
        task.state = TaskState.POLLING

        while self.clock() <= task.deadline:
            task.poll_count += 1
            payload = await self.fetch_status(task_id)
            status = payload.get("task_status")
            if not status:
                task.state = TaskState.FAILED
                raise RemoteTaskError("missing_status", f"no task_status in response: {payload}")
            task.remote_status = str(status)
            self.log.debug("task %s poll %d status=%s", task_id, task.poll_count, status)

            if task.remote_status in _SUCCESS_STATUSES:
                images = payload.get("output_images") or []
                if not isinstance(images, list) or not images or not isinstance(images[0], str) or not images[0]:
                    task.state = TaskState.FAILED
                    raise RemoteTaskError("missing_output", "task succeeded without an image url")
                task.state = TaskState.SUCCEEDED
                self.log.info("task %s succeeded after %d polls", task_id, task.poll_count)
                return TaskResult(task_id=task_id, image_url=images[0], poll_count=task.poll_count)

            if task.remote_status in _FAILED_STATUSES:
                task.state = TaskState.FAILED
                error = payload.get("error") or {}
                if isinstance(error, str):
                    error = {"message": error}
                elif not isinstance(error, dict):
                    error = {}
                code = str(error.get("code") or "")
                message = str(error.get("message") or "unknown")
                self.log.warning("task %s failed: code=%s message=%s", task_id, code, message)
                raise RemoteTaskError(code, message)

            if self.clock() > task.deadline:
                break
            await self.sleep(self.poll_interval)

        task.state = TaskState.TIMED_OUT
        self.log.warning("task %s timed out after %d polls", task_id, task.poll_count)
        raise TaskTimeoutError(task_id, task.poll_count)
