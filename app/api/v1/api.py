from fastapi import APIRouter

from app.api.v1.routers import article_sync

# API маршруты
api_router = APIRouter()
api_router.include_router(article_sync.router, prefix="/article-sync", tags=["Article sync"])
