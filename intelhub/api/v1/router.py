"""
API router assembly. Every intelligence endpoint requires authentication.
"""

from fastapi import APIRouter, Depends

from intelhub.api.v1.helpers.authentication import get_current_user
from intelhub.api.v1.endpoints import intelligence

api_router = APIRouter(dependencies=[Depends(get_current_user)])
api_router.include_router(
    intelligence.router, prefix="/intelligence", tags=["intelligence"]
)
