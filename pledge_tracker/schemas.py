"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming data validation
- Response models for API responses

Field names follow the JSON the dashboard frontend already consumes:
row fields are snake_case, display fields camelCase.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field


# =============================================================================
# Pydantic Request Models
# =============================================================================

# Keeps tier_cents * count inside a BIGINT for any INTEGER tier
MAX_TIER_COUNT = 1_000_000

# paddle_pledges.tier_cents is a 32-bit INTEGER
MAX_TIER_CENTS = 2_147_483_647


class TierCountUpdate(BaseModel):
    """
    Body of PUT /api/paddle-pledges/{tier_cents}.

    count must be a JSON integer between 0 and MAX_TIER_COUNT; strings,
    floats and booleans are rejected.
    """
    count: int = Field(..., ge=0, le=MAX_TIER_COUNT, strict=True, description="New pledge count for the tier")

    model_config = {
        "json_schema_extra": {
            "examples": [{"count": 10}]
        }
    }


# =============================================================================
# Pydantic Response Models
# =============================================================================

class TotalsResponse(BaseModel):
    """Response model for GET /api/totals; also the totals_updated payload."""
    grandTotal: int = Field(..., description="Paddle plus text total, in cents")
    paddleTotal: int = Field(..., description="Paddle pledge total, in cents")
    textTotal: int = Field(..., description="Text pledge total, in cents")
    grandTotalFormatted: str
    paddleTotalFormatted: str
    textTotalFormatted: str
    goalPercentage: float = Field(..., ge=0, le=100, description="Progress toward the goal")


class PaddlePledgeResponse(BaseModel):
    """One paddle pledge tier with display strings."""
    tier_cents: int
    count: int = Field(..., ge=0)
    total_cents: int = Field(..., ge=0)
    tier_dollars: int
    tierFormatted: str
    totalFormatted: str


class PaddlePledgeUpdateResponse(PaddlePledgeResponse):
    """Updated tier returned by PUT /api/paddle-pledges/{tier_cents}."""
    id: int
    updated_at: Optional[datetime] = None


class TextPledgeResponse(BaseModel):
    """One text pledge, amount in cents, dollars and display form."""
    id: int
    amount_cents: int
    amount_dollars: Decimal
    amountFormatted: str
    phone_number: Optional[str] = None
    message: Optional[str] = None
    created_at: str = Field(..., description="UTC, ISO-8601")
    created_at_local: str = Field(..., description="Display time zone, ISO-8601")


class ResetResponse(BaseModel):
    message: str
    deleted: Optional[int] = Field(None, description="Text pledges removed")


class WebhookResponse(BaseModel):
    """Acknowledgement for webhook intake."""
    message: str = "Webhook received (not implemented yet)"


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class HealthResponse(BaseModel):
    """Response model for GET /health."""
    status: str = Field(..., description="Health status")
    timestamp: str = Field(..., description="Server time, ISO-8601 UTC")


class ReadinessResponse(BaseModel):
    """Response model for GET /health/ready."""
    status: str
    primary: bool = Field(..., description="Primary store reachable")
    sms: bool = Field(..., description="SMS store reachable")
