"""Top-level API router."""

from fastapi import APIRouter

from studio_ops.api.routes.health import router as health_router
from studio_ops.api.routes.me import router as me_router
from studio_ops.api.routes.projects import router as projects_router
from studio_ops.api.routes.tasks import router as tasks_router

api_router = APIRouter()
api_router.include_router(health_router, tags=["health"])
api_router.include_router(me_router)
api_router.include_router(projects_router)
api_router.include_router(tasks_router)
