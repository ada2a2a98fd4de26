"""Task dispatch with per-task-id idempotency.

TASKS_BACKEND picks where tasks run:
- inline (default): in-process, for local dev and tests
- http: POST to the worker service
- cloud_tasks: Google Cloud Tasks queue targeting the worker
"""

import os
from datetime import datetime
from typing import Callable

TaskHandler = Callable[[dict], object]


def _send_remote(
    backend: str,
    task_id: str,
    url_path: str,
    payload: dict,
    correlation_id: str | None,
    schedule_time: datetime | None,
) -> bool:
    if backend == "http":
        from tourbook.tasks.http_backend import enqueue_http

        return enqueue_http(task_id, url_path, payload, correlation_id, schedule_time)
    if backend == "cloud_tasks":
        from tourbook.tasks.cloud_tasks_backend import enqueue_cloud_task

        return enqueue_cloud_task(task_id, url_path, payload, correlation_id, schedule_time)
    raise ValueError(f"Unknown TASKS_BACKEND: {backend}")


class TasksClient:
    """Runs or enqueues each task_id at most once per client instance.

    The backend is read from TASKS_BACKEND when the client is built unless
    passed explicitly.
    """

    def __init__(self, backend: str | None = None) -> None:
        self._backend = backend or os.environ.get("TASKS_BACKEND", "inline")
        self._seen: set[str] = set()
        self._registered: list[dict] = []

    @property
    def backend(self) -> str:
        return self._backend

    def _claim(self, task_id: str) -> bool:
        if task_id in self._seen:
            return False
        self._seen.add(task_id)
        return True

    def enqueue(
        self,
        task_id: str,
        handler: TaskHandler,
        payload: dict,
        schedule_time: datetime | None = None,
    ) -> bool:
        """Call handler(payload) in-process, whatever the backend.

        With schedule_time the task is recorded instead of run.

        Returns:
            False when task_id was already seen.
        """
        if not self._claim(task_id):
            return False

        if schedule_time is None:
            handler(payload)
        else:
            self._registered.append(
                {
                    "task_id": task_id,
                    "handler": handler,
                    "payload": payload,
                    "schedule_time": schedule_time,
                }
            )
        return True

    def enqueue_http(
        self,
        task_id: str,
        url_path: str,
        payload: dict,
        correlation_id: str | None = None,
        schedule_time: datetime | None = None,
    ) -> bool:
        """Send the task to the worker endpoint at url_path.

        The inline backend only records it (see get_scheduled_tasks()).

        Raises:
            ValueError: TASKS_BACKEND is unknown.
        """
        if not self._claim(task_id):
            return False

        if self._backend != "inline":
            return _send_remote(
                self._backend, task_id, url_path, payload, correlation_id, schedule_time
            )

        self._registered.append(
            {
                "task_id": task_id,
                "url_path": url_path,
                "payload": payload,
                "correlation_id": correlation_id,
                "schedule_time": schedule_time,
            }
        )
        return True

    def dispatch(
        self,
        task_id: str,
        url_path: str,
        handler: TaskHandler,
        payload: dict,
        correlation_id: str | None = None,
    ) -> bool:
        """Run a task now: in-process for inline, via the worker otherwise.

        handler must be what the worker endpoint at url_path calls, so both
        paths behave the same.
        """
        if self._backend == "inline":
            return self.enqueue(task_id, handler, payload)
        return self.enqueue_http(task_id, url_path, payload, correlation_id)

    def was_executed(self, task_id: str) -> bool:
        return task_id in self._seen

    def get_scheduled_tasks(self) -> list[dict]:
        """Tasks recorded but not run."""
        return list(self._registered)

    def clear(self) -> None:
        self._seen.clear()
        self._registered.clear()
