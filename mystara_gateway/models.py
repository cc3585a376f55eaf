"""Request and response bodies for the Mystara gateway.

Request fields are declared loosely. Type and length checks happen in the
dispatcher's validation stage, which maps failures onto the endpoint's own
error codes.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class ChatRequest(BaseModel):
    """Incoming question from the caller."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    user_message: Optional[Any] = Field(default=None, alias="userMessage")
    context: Any = Field(default=None, description="Opaque caller context")
    user_id: Optional[Any] = Field(default=None, alias="userId")
    is_premium: Any = Field(default=False, alias="isPremium")


class ChatResponse(BaseModel):
    """Successful buffered answer."""

    model_config = ConfigDict(populate_by_name=True)

    response: str
    remaining_requests: int = Field(..., ge=0, alias="remainingRequests")
    is_premium: bool = Field(..., alias="isPremium")


class ErrorResponse(BaseModel):
    """Error envelope for validation, configuration and upstream failures."""

    error: str
    message: str


class RateLimitedResponse(BaseModel):
    """Body returned with a 429."""

    model_config = ConfigDict(populate_by_name=True)

    error: str = "rate_limit_exceeded"
    mensaje: str
    reset_in: int = Field(..., ge=0, alias="resetIn")
