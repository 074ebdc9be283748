from fastapi import APIRouter

from stacksignal.api.routes import companies, health, processor, queue

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(processor.router, prefix="/processor", tags=["processor"])
api_router.include_router(queue.router, prefix="/queue", tags=["queue"])
api_router.include_router(companies.router, prefix="/companies", tags=["companies"])
