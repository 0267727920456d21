"""
API v1 router aggregation.

WHAT: Mount the status and catalog-offer routers under /api/v1
WHY: Single place where the HTTP surface of the engines is assembled
HOW: One APIRouter carrying the version prefix, endpoint routers included by tag
"""

from fastapi import APIRouter

from .endpoints import status, offers

API_V1_PREFIX = "/api/v1"

api_router = APIRouter(prefix=API_V1_PREFIX)

api_router.include_router(status.router, tags=["status"])
api_router.include_router(offers.router, tags=["catalog-offers"])
