"""
matchround/routes/__init__.py
Route registration
"""
from fastapi import APIRouter
from matchround.routes import matching, periods, stars

router = APIRouter()

router.include_router(matching.router)
router.include_router(periods.router)
router.include_router(stars.router)
