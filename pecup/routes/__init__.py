"""Route handlers for the academic resources API."""

from pecup.routes.academic import router as academic_router
from pecup.routes.admin import router as admin_router
from pecup.routes.content import router as content_router
from pecup.routes.feeds import router as feeds_router
from pecup.routes.profile import router as profile_router
from pecup.routes.resources import router as resources_router

__all__ = [
    "academic_router",
    "admin_router",
    "content_router",
    "feeds_router",
    "profile_router",
    "resources_router",
]
