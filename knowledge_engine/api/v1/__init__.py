"""
API v1 module initialization.
"""

from fastapi import APIRouter
from .ask import router as ask_router
from .ingestion import router as ingestion_router
from .jobs import router as jobs_router
from .audits import router as audits_router

api_router = APIRouter()

# Include all v1 routers
api_router.include_router(ask_router, prefix="/agents", tags=["ask"])
api_router.include_router(ingestion_router, prefix="/agents", tags=["ingestion"])
api_router.include_router(jobs_router, prefix="/jobs", tags=["jobs"])
api_router.include_router(audits_router, prefix="/audits", tags=["audits"])
