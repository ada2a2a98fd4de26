"""Worker route delivering BookingUpdated notifications."""

from typing import Any

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse

from tourbook.api.task_auth import verify_task_auth
from tourbook.notifications.dispatch import dispatch_booking_updated
from tourbook.observability.correlation import get_correlation_id
from tourbook.observability.logging import get_logger
from tourbook.observability.redaction import safe_log_context

router = APIRouter(prefix="/tasks/notifications", tags=["tasks"])

logger = get_logger(__name__)

_REQUIRED = ("booking_type", "booking_id", "change_type", "version", "outbox_event_id")


@router.post("/booking-updated")
async def booking_updated(request: Request) -> JSONResponse:
    """Run BookingUpdated subscribers for one committed edit.

    Subscriber failures are logged and reported in the body but still
    answer 200, so the queue does not redeliver to the ones that succeeded.
    """
    correlation_id = get_correlation_id()

    if not verify_task_auth(request):
        logger.warning(
            "task auth failed",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        raise HTTPException(status_code=401, detail="Unauthorized")

    try:
        payload: dict[str, Any] = await request.json()
    except Exception:
        return JSONResponse(status_code=400, content={"ok": False, "error": "invalid json"})

    missing = [name for name in _REQUIRED if payload.get(name) in (None, "")]
    if missing:
        logger.warning(
            "missing required fields",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id, missing=missing)},
        )
        return JSONResponse(
            status_code=400,
            content={"ok": False, "error": "missing required fields"},
        )

    results = dispatch_booking_updated(payload)
    return JSONResponse(status_code=200, content={"ok": True, "subscribers": results})
