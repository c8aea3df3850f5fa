"""Moderation API routers."""

from fastapi import APIRouter

from . import actions, admin_ops, reports, restrictions

router = APIRouter()
router.include_router(reports.router)
router.include_router(actions.router)
router.include_router(actions.users_router)
router.include_router(restrictions.router)
router.include_router(restrictions.users_router)
router.include_router(admin_ops.router)

__all__ = ["router"]
