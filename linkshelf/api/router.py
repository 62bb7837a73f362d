from fastapi import APIRouter

from linkshelf.api.routes import health, links

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(links.router, prefix="/links", tags=["links"])
