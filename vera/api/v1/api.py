"""
Main API Router
Aggregates all API endpoints for v1
"""

from fastapi import APIRouter
from vera.api.v1.endpoints import tickets, resale, payments, health

api_router = APIRouter()

api_router.include_router(tickets.router, prefix="/tickets", tags=["tickets"])
api_router.include_router(resale.router, prefix="/resale", tags=["resale"])
api_router.include_router(payments.router, prefix="/payments", tags=["payments"])
api_router.include_router(health.router, prefix="/health", tags=["health"])
