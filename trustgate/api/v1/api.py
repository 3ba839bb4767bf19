from fastapi import APIRouter

from trustgate.api.v1.endpoints import feature_flags, sessions

api_router = APIRouter()
api_router.include_router(feature_flags.router, prefix="/flags", tags=["feature-flags"])
api_router.include_router(sessions.router, prefix="/sessions", tags=["sessions"])
