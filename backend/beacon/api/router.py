from fastapi import APIRouter

from beacon.api.routes import health, auth, admin, notifications, push

api_router = APIRouter()
api_router.include_router(health.router, prefix="/health", tags=["health"])  # GET /
api_router.include_router(auth.router, prefix="/auth", tags=["auth"])  # POST /login, /register, GET /me
api_router.include_router(admin.router, prefix="/admin", tags=["admin"])  # broadcasts, analytics, users
api_router.include_router(notifications.router, prefix="/notifications", tags=["notifications"])  # recipient feed
api_router.include_router(push.router, prefix="/push", tags=["push"])  # device token registry
