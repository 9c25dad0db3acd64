from fastapi import APIRouter

from kubedeploy.api.routes import applications

api_router = APIRouter(prefix="/api/v1")
api_router.include_router(applications.router)
