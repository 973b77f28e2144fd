"""
Common Schemas
Response envelope shared by every endpoint
"""

from typing import Generic, Optional, TypeVar
from pydantic import BaseModel


T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """Success envelope: {success, data, message}"""
    success: bool = True
    data: Optional[T] = None
    message: Optional[str] = None


class ErrorResponse(BaseModel):
    """Failure envelope: {success: false, error, code, message}"""
    success: bool = False
    error: str
    code: str
    message: str
    details: Optional[dict] = None


def ok(data=None, message: Optional[str] = None) -> dict:
    return {"success": True, "data": data, "message": message}
