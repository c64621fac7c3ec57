from fastapi import APIRouter

from app.api.v1.audio import router as audio_router
from app.api.v1.chat import router as chat_router
from app.api.v1.usage import router as usage_router

api_v1_router = APIRouter(prefix="/v1")
api_v1_router.include_router(chat_router)
api_v1_router.include_router(audio_router)
api_v1_router.include_router(usage_router)
