"""Request/response bodies of the HTTP surface."""

from typing import Literal, Optional, Union

from pydantic import BaseModel, Field


class ParcelowCheckoutRequest(BaseModel):
    """Create a checkout, or simulate the BRL amount of a USD price"""
    order_id: Optional[str] = None
    action: Literal["create", "simulate"] = "create"
    currency: str = Field(default="USD", pattern="^(USD|BRL|usd|brl)$")
    amount_usd: Optional[Union[float, str]] = None


class WiseCheckoutRequest(BaseModel):
    order_id: str
    client_currency: str = Field(default="USD", min_length=3, max_length=3)


class ZelleNotifyRequest(BaseModel):
    order_id: str


class WebhookAck(BaseModel):
    received: bool = True
    outcome: Optional[str] = None


class ZelleNotifyResponse(BaseModel):
    success: bool = True
    order_id: str
    outcome: str
    side_effects: list[str]


class HealthResponse(BaseModel):
    status: str
    version: str
    uptime_seconds: float
    store: str
    pending_side_effects: int
