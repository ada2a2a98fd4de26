"""Cloud Tasks backend: one HTTP task per task_id, targeting the worker."""

import json
import os
from dataclasses import dataclass
from datetime import datetime

from google.api_core.exceptions import AlreadyExists
from google.cloud import tasks_v2
from google.protobuf import timestamp_pb2

from tourbook.observability.correlation import CORRELATION_ID_HEADER
from tourbook.observability.logging import get_logger
from tourbook.observability.redaction import safe_log_context

logger = get_logger(__name__)


@dataclass(frozen=True)
class QueueConfig:
    project: str
    location: str
    queue: str
    worker_url: str
    service_account: str
    audience: str

    @classmethod
    def from_env(cls) -> "QueueConfig":
        """Raises RuntimeError when a required variable is missing."""
        project = os.environ.get("GOOGLE_CLOUD_PROJECT") or os.environ.get("GCP_PROJECT_ID")
        worker_url = os.environ.get("WORKER_BASE_URL")
        service_account = os.environ.get("TASKS_OIDC_SERVICE_ACCOUNT")
        if not project:
            raise RuntimeError("GOOGLE_CLOUD_PROJECT or GCP_PROJECT_ID required")
        if not worker_url:
            raise RuntimeError("WORKER_BASE_URL required for Cloud Tasks")
        if not service_account:
            raise RuntimeError("TASKS_OIDC_SERVICE_ACCOUNT required for Cloud Tasks")
        return cls(
            project=project,
            location=os.environ.get("GCP_LOCATION", "us-central1"),
            queue=os.environ.get("GCP_TASKS_QUEUE", "tourbook-default"),
            worker_url=worker_url,
            service_account=service_account,
            # Must match what verify_task_oidc checks on the worker
            audience=os.environ.get("TASKS_OIDC_AUDIENCE") or worker_url,
        )


def _build_task(
    config: QueueConfig,
    parent: str,
    task_id: str,
    url_path: str,
    payload: dict,
    correlation_id: str | None,
    schedule_time: datetime | None,
) -> dict:
    headers = {"Content-Type": "application/json"}
    if correlation_id:
        headers[CORRELATION_ID_HEADER] = correlation_id

    # Task names only allow letters, digits, hyphens and underscores
    task_name = task_id.replace(":", "-").replace("/", "-")
    task: dict = {
        "name": f"{parent}/tasks/{task_name}",
        "http_request": {
            "http_method": tasks_v2.HttpMethod.POST,
            "url": f"{config.worker_url.rstrip('/')}{url_path}",
            "headers": headers,
            "body": json.dumps(payload).encode(),
            "oidc_token": {
                "service_account_email": config.service_account,
                "audience": config.audience,
            },
        },
    }
    if schedule_time is not None:
        ts = timestamp_pb2.Timestamp()
        ts.FromDatetime(schedule_time)
        task["schedule_time"] = ts
    return task


def enqueue_cloud_task(
    task_id: str,
    url_path: str,
    payload: dict,
    correlation_id: str | None = None,
    schedule_time: datetime | None = None,
) -> bool:
    """Create the Cloud Task for task_id.

    The task name derives from task_id, so a second create for the same id
    is dropped by Cloud Tasks and still counts as success.

    Raises:
        RuntimeError: Required environment variables are missing.
    """
    config = QueueConfig.from_env()
    client = tasks_v2.CloudTasksClient()
    parent = client.queue_path(config.project, config.location, config.queue)
    task = _build_task(config, parent, task_id, url_path, payload, correlation_id, schedule_time)

    try:
        created = client.create_task(parent=parent, task=task)
    except AlreadyExists:
        logger.info(
            "cloud task already exists",
            extra={"extra_fields": safe_log_context(task_id=task_id)},
        )
        return True

    logger.info(
        "cloud task created",
        extra={"extra_fields": safe_log_context(task_name=created.name, url_path=url_path)},
    )
    return True
