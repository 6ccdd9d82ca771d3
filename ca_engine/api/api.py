from fastapi import APIRouter
from ca_engine.api.v1.endpoints import corporate_actions

# Create API v1 router
api_router = APIRouter()

api_router.include_router(corporate_actions.router, prefix="/corporate-actions", tags=["corporate-actions"])
