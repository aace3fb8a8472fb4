"""
Main API router
"""
from fastapi import APIRouter

from leave_engine.api.v1 import balances, health, leaves, policies

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(leaves.router, prefix="/leaves", tags=["leaves"])
api_router.include_router(balances.router, prefix="/balances", tags=["balances"])
api_router.include_router(policies.router, prefix="/policies", tags=["policies"])
