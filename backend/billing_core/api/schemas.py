"""Pydantic response models."""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class WebhookReceiptResponse(BaseModel):
    status: str = Field(..., description="received or already_processed")
    eventId: Optional[str] = None


class PlanResponse(BaseModel):
    code: str
    name: str
    entitlements: Dict[str, str]


class EntitlementItemResponse(BaseModel):
    key: str
    value: str
    source: str = Field(..., description="PLAN or OVERRIDE")


class EntitlementsResponse(BaseModel):
    tenantId: str
    planCode: str
    status: str
    seatsQuantity: Optional[int] = None
    activeSeats: int
    entitlementVersion: int
    items: List[EntitlementItemResponse]


class EntitlementVersionResponse(BaseModel):
    tenantId: str
    entitlementVersion: int
    tokenVersion: Optional[int] = None
    stale: bool
