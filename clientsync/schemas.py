"""
Pydantic schemas for authority server payloads.

The server speaks camelCase inside a `{success, data, message}` envelope;
these models validate the `data` part and convert it into domain models.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import AliasChoices, BaseModel, Field

from .models import (
    CollectionLimits,
    EntitlementSnapshot,
    PlanRef,
    normalize_limit,
)


class Envelope(BaseModel):
    """Standard server response wrapper."""
    success: bool = False
    data: Any = None
    message: Optional[str] = None
    error_code: Optional[str] = Field(default=None, alias="errorCode")
    limit_reached: bool = Field(default=False, alias="limitReached")

    class Config:
        populate_by_name = True


# ===== ENTITLEMENT SCHEMAS =====

class EntitlementStatusPayload(BaseModel):
    """GET entitlement-status"""
    is_entitled: bool = Field(
        default=False,
        validation_alias=AliasChoices("isEntitled", "isSubscribed", "is_entitled"),
    )
    plan: Optional[Dict[str, Any]] = None
    plan_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("planId", "plan_id"),
    )
    plan_name: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("planName", "plan_name"),
    )
    expires_at: Optional[datetime] = Field(
        default=None,
        validation_alias=AliasChoices("expiresAt", "expiryDate", "expires_at"),
    )
    used: int = 0
    limit: Union[int, str, None] = Field(
        default=None,
        validation_alias=AliasChoices("limit", "maxSearches"),
    )

    def to_snapshot(self, default_limit: int = 3) -> EntitlementSnapshot:
        """Convert to a domain snapshot (plan repair is the store's job)."""
        plan = PlanRef.from_dict(self.plan) if self.plan else None
        return EntitlementSnapshot(
            is_entitled=self.is_entitled,
            plan=plan,
            expires_at=self.expires_at,
            used=max(self.used, 0),
            limit=normalize_limit(self.limit, default=default_limit),
        )


class PlanCatalogPayload(BaseModel):
    """GET plan-catalog"""
    plans: List[Dict[str, Any]] = []

    def to_plans(self) -> List[PlanRef]:
        return [PlanRef.from_dict(plan) for plan in self.plans]


# ===== SAVED ITEM SCHEMAS =====

class LimitsPayload(BaseModel):
    """Saved-item quota block."""
    current: int = 0
    max: int = 5
    remaining: int = 5
    plan: str = "Free"

    def to_limits(self) -> CollectionLimits:
        return CollectionLimits(
            current=self.current,
            max=self.max,
            remaining=self.remaining,
            plan=self.plan,
        )


class SavedItemsPayload(BaseModel):
    """GET saved-items"""
    items: List[Dict[str, Any]] = []
    limits: Optional[LimitsPayload] = None


class ToggleItemResponse(BaseModel):
    """POST toggle-item"""
    ok: bool
    reason: Optional[str] = None
    limit_reached: bool = Field(default=False, alias="limitReached")
    updated_item: Optional[Dict[str, Any]] = Field(default=None, alias="updatedItem")
    limits: Optional[LimitsPayload] = None

    class Config:
        populate_by_name = True


# ===== PAYMENT SCHEMAS =====

class PaymentOrderResponse(BaseModel):
    """POST create-payment-order"""
    order_id: Optional[str] = Field(default=None, alias="orderId")
    link_id: Optional[str] = Field(default=None, alias="linkId")
    payment_link: Optional[str] = Field(default=None, alias="paymentLink")
    payment_ref: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("paymentRef", "paymentId", "payment_ref"),
    )
    plan_id: Optional[str] = Field(default=None, alias="planId")

    class Config:
        populate_by_name = True


class VerifyPaymentResponse(BaseModel):
    """POST verify-payment"""
    ok: bool
    reason: Optional[str] = None
    error_code: Optional[str] = Field(default=None, alias="errorCode")

    class Config:
        populate_by_name = True
