from fastapi import APIRouter

from .endpoints import health, heist

router = APIRouter()
router.include_router(health.router, tags=["Health"])
router.include_router(heist.router)
