"""
Standardized error responses for the API.
"""

from typing import Any
from fastapi import HTTPException, status
from pydantic import BaseModel


class APIResponse(BaseModel):
    """Standard API response model"""

    success: bool
    message: str
    data: Any | None = None
    errors: list[str] | None = None


def error_response(
    message: str = "An error occurred",
    errors: list[str] | None = None,
    status_code: int = status.HTTP_400_BAD_REQUEST,
) -> HTTPException:
    """Raise an error response"""
    response_data = APIResponse(success=False, message=message, errors=errors or [])

    raise HTTPException(status_code=status_code, detail=response_data.model_dump())


def unauthorized_response(message: str = "Authentication required") -> HTTPException:
    """Raise an unauthorized error response"""
    return error_response(message=message, status_code=status.HTTP_401_UNAUTHORIZED)

