"""Master API router — includes all sub-routers."""

from fastapi import APIRouter

from .routes.exports import router as exports_router
from .routes.schedules import router as schedules_router
from .routes.templates import router as templates_router

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(exports_router)
api_router.include_router(schedules_router)
api_router.include_router(templates_router)
