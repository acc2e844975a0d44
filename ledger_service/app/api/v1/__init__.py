from fastapi import APIRouter

from .admin import router as admin_router
from .balances import router as balances_router
from .generations import router as generations_router
from .payments import router as payments_router

api_router = APIRouter()
api_router.include_router(balances_router, prefix="/balances", tags=["balances"])
api_router.include_router(payments_router, prefix="/payments", tags=["payments"])
api_router.include_router(
    generations_router, prefix="/generations", tags=["generations"]
)
api_router.include_router(admin_router, prefix="/admin", tags=["admin"])
