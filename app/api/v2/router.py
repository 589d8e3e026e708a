from fastapi import APIRouter
from app.api.v2 import quickbooks

api_router = APIRouter()

# Include all v2 routers
api_router.include_router(quickbooks.router, prefix="/quickbooks", tags=["quickbooks"])
