"""SpecVault - API Routers"""
from .unlock import router as unlock_router

__all__ = [
    "unlock_router",
]
