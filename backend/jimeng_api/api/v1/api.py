from fastapi import APIRouter

from jimeng_api.api.v1.endpoints import chat, images, videos, models, token

api_router = APIRouter()

api_router.include_router(chat.router, prefix="/chat", tags=["chat"])
api_router.include_router(images.router, prefix="/images", tags=["images"])
api_router.include_router(videos.router, prefix="/videos", tags=["videos"])
api_router.include_router(models.router, prefix="/models", tags=["models"])

token_router = APIRouter()
token_router.include_router(token.router, prefix="/token", tags=["token"])
