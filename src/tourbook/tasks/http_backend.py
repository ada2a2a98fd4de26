"""HTTP backend for tasks: POSTs straight to the worker service.

For local and staging setups where the api and worker run side by side
without a Cloud Tasks queue in between.
"""

import os
from datetime import datetime

import requests
from google.auth.transport.requests import Request as GoogleRequest
from google.oauth2.id_token import fetch_id_token

from tourbook.api.task_auth import INTERNAL_SECRET_HEADER, LOCAL_TASKS_AUDIENCE
from tourbook.observability.logging import get_logger
from tourbook.observability.redaction import safe_log_context

logger = get_logger(__name__)


def _worker_base_url() -> str:
    return os.environ.get("WORKER_BASE_URL", "http://worker:8000").rstrip("/")


def _fetch_oidc_token(audience: str) -> str | None:
    """Google-signed ID token for audience, or None when unavailable.

    Needs the metadata server or application default credentials.
    """
    try:
        return fetch_id_token(GoogleRequest(), audience)
    except Exception as e:
        logger.error(
            "failed to fetch OIDC ID token",
            extra={
                "extra_fields": safe_log_context(
                    audience=audience,
                    error_type=type(e).__name__,
                )
            },
        )
        return None


def _auth_headers(task_id: str, url_path: str) -> dict[str, str] | None:
    audience = os.environ.get("TASKS_OIDC_AUDIENCE", "")
    if audience == LOCAL_TASKS_AUDIENCE:
        secret = os.environ.get("INTERNAL_TASK_SECRET", "")
        return {INTERNAL_SECRET_HEADER: secret} if secret else {}

    token = _fetch_oidc_token(audience or _worker_base_url())
    if not token:
        logger.error(
            "HTTP task enqueue aborted: OIDC token unavailable",
            extra={"extra_fields": safe_log_context(task_id=task_id, url_path=url_path)},
        )
        return None
    return {"Authorization": f"Bearer {token}"}


def enqueue_http(
    task_id: str,
    url_path: str,
    payload: dict,
    correlation_id: str | None = None,
    schedule_time: datetime | None = None,
) -> bool:
    """POST the task payload to the worker.

    Args:
        task_id: Unique task identifier (for logging/tracing).
        url_path: Worker endpoint path (e.g. "/tasks/stripe/handle-event").
        payload: Task payload (must be PII-free).
        correlation_id: Optional correlation ID for tracing.
        schedule_time: Not supported here; the task is accepted and dropped.

    Returns:
        True if the worker answered 2xx, False otherwise.
    """
    if schedule_time is not None:
        logger.warning(
            "HTTP backend does not support scheduled tasks",
            extra={"extra_fields": safe_log_context(task_id=task_id)},
        )
        return True

    auth = _auth_headers(task_id, url_path)
    if auth is None:
        return False

    headers = {
        "Content-Type": "application/json",
        "X-Correlation-ID": correlation_id or "",
        "X-Task-Id": task_id,
        **auth,
    }
    timeout = int(os.environ.get("TASKS_HTTP_TIMEOUT", "30"))

    try:
        response = requests.post(
            f"{_worker_base_url()}{url_path}",
            json=payload,
            headers=headers,
            timeout=timeout,
        )
        response.raise_for_status()
    except requests.RequestException as e:
        logger.error(
            "HTTP task enqueue failed",
            extra={
                "extra_fields": safe_log_context(
                    task_id=task_id,
                    url_path=url_path,
                    error_type=type(e).__name__,
                )
            },
        )
        return False

    logger.info(
        "HTTP task enqueued",
        extra={"extra_fields": safe_log_context(task_id=task_id, url_path=url_path)},
    )
    return True
