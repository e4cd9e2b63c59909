from fastapi import APIRouter

from donations.routers import case, contribution_approval, contribution_import

api_router = APIRouter()
api_router.include_router(contribution_approval.router)
api_router.include_router(contribution_import.router)
api_router.include_router(case.router)

__all__ = ["api_router"]
