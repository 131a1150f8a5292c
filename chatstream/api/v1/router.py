# pyright: reportMissingImports=false
# pyright: reportUnknownArgumentType=false
# pyright: reportUnknownVariableType=false
from __future__ import annotations

from fastapi import APIRouter

from chatstream.api.v1.conversations import router as conversations_router
from chatstream.api.v1.health import router as health_router


api_router = APIRouter()
api_router.include_router(health_router)
api_router.include_router(conversations_router)
