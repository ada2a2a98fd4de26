"""Worker/internal routes (APP_ROLE=worker)."""

from fastapi import APIRouter

from tourbook.api.routes import tasks_notifications, tasks_stripe

router = APIRouter()


@router.get("/tasks/health")
def tasks_health() -> dict:
    """Tasks subsystem health check."""
    return {"status": "ok", "subsystem": "tasks"}


router.include_router(tasks_stripe.router)
router.include_router(tasks_notifications.router)
