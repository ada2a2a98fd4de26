"""Authentication for worker task endpoints.

Production tasks carry a Google-signed OIDC token minted by Cloud Tasks (or
by the http backend). Local setups with TASKS_OIDC_AUDIENCE set to the local
audience may instead send X-Internal-Task-Secret.
"""

from __future__ import annotations

import hmac
import os
from dataclasses import dataclass

import jwt
from fastapi import Request
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token

from tourbook.observability.logging import get_logger
from tourbook.observability.redaction import safe_log_context

logger = get_logger(__name__)

LOCAL_TASKS_AUDIENCE = "tourbook-tasks-local"
INTERNAL_SECRET_HEADER = "X-Internal-Task-Secret"


@dataclass(frozen=True)
class TaskAuthConfig:
    audience: str
    service_account: str
    internal_secret: str

    @property
    def local(self) -> bool:
        return self.audience == LOCAL_TASKS_AUDIENCE

    @classmethod
    def from_env(cls) -> "TaskAuthConfig":
        return cls(
            audience=os.environ.get("TASKS_OIDC_AUDIENCE", ""),
            service_account=os.environ.get("TASKS_OIDC_SERVICE_ACCOUNT", ""),
            internal_secret=os.environ.get("INTERNAL_TASK_SECRET", ""),
        )


def _unverified_audience(token: str) -> str | None:
    """aud claim for diagnostics only; never used to accept a token."""
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError:
        return None
    aud = claims.get("aud")
    return str(aud) if aud is not None else None


def extract_bearer_token(request: Request) -> str | None:
    """Token from an "Authorization: Bearer <token>" header, if present."""
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    if scheme != "Bearer" or not token:
        return None
    return token


def verify_task_oidc(token: str, config: TaskAuthConfig | None = None) -> bool:
    """Check a Google-signed ID token against the configured audience.

    Fails closed when TASKS_OIDC_AUDIENCE is unset. When
    TASKS_OIDC_SERVICE_ACCOUNT is set the token's email must match it.
    """
    config = config or TaskAuthConfig.from_env()
    if not token:
        return False
    if not config.audience:
        logger.error(
            "task OIDC audience not configured, rejecting",
            extra={"extra_fields": safe_log_context(reason="missing_audience_env")},
        )
        return False

    try:
        claims = id_token.verify_oauth2_token(
            token, google_requests.Request(), audience=config.audience
        )
    except ValueError as e:
        logger.warning(
            "task OIDC token rejected",
            extra={
                "extra_fields": safe_log_context(
                    error=str(e),
                    expected_audience=config.audience,
                    received_audience=_unverified_audience(token),
                )
            },
        )
        return False

    if config.service_account and claims.get("email") != config.service_account:
        logger.warning(
            "task OIDC service account mismatch",
            extra={
                "extra_fields": safe_log_context(
                    expected_email=config.service_account,
                    token_email=claims.get("email", ""),
                )
            },
        )
        return False
    return True


def verify_task_auth(request: Request) -> bool:
    """True if the request may call a worker task endpoint."""
    config = TaskAuthConfig.from_env()

    if config.local and config.internal_secret:
        supplied = request.headers.get(INTERNAL_SECRET_HEADER, "")
        if supplied and hmac.compare_digest(supplied, config.internal_secret):
            return True

    token = extract_bearer_token(request)
    if token is None:
        logger.warning(
            "task auth failed: missing Bearer token",
            extra={"extra_fields": safe_log_context(reason="missing_bearer_token")},
        )
        return False
    return verify_task_oidc(token, config)
