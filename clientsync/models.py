"""
Data models for client-side synchronization.

Defines saved items, entitlement snapshots, pending payment confirmations
and the result objects returned by the public APIs.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


# Limit value meaning "no bound is enforced"
UNLIMITED = -1

# Legacy server encodings of "unlimited"
_UNLIMITED_ALIASES = {-1, 999999, "unlimited"}

# Version of the persisted PendingConfirmation layout
PENDING_CONFIRMATION_VERSION = 1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_limit(value: Any, default: int = 0) -> int:
    """Coerce a server limit/remaining value to an int, mapping unlimited aliases."""
    if value in _UNLIMITED_ALIASES:
        return UNLIMITED
    if value is None:
        return default
    try:
        return int(value)
    except (ValueError, TypeError):
        return default


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


# =============================================================================
# Saved items
# =============================================================================

@dataclass
class Item:
    """
    A saved-item record mirrored from the server.

    Removal is a tombstone (`removed=True`) so a failed removal can be
    rolled back with the original data intact.
    """
    id: str
    display_name: str
    image_ref: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    added_at: datetime = field(default_factory=utcnow)
    removed: bool = False
    source: Optional[str] = None
    source_id: Optional[str] = None
    placeholder: bool = False  # Synthesized locally, no server data yet

    def to_payload(self) -> Dict[str, Any]:
        """Convert to the wire shape sent with an add mutation."""
        payload = dict(self.metadata)
        payload.update({
            "_id": self.id,
            "id": self.id,
            "name": self.display_name,
            "image": self.image_ref,
            "source": self.source or "unknown",
            "sourceType": self.source or "unknown",
            "sourceId": self.source_id,
        })
        return payload


@dataclass
class CollectionLimits:
    """Saved-item quota as last reported by the server (or adjusted locally)."""
    current: int = 0
    max: int = 5
    remaining: int = 5
    plan: str = "Free"

    def after_add(self) -> "CollectionLimits":
        return replace(
            self,
            current=min(self.current + 1, self.max),
            remaining=max(self.remaining - 1, 0),
        )

    def after_remove(self) -> "CollectionLimits":
        return replace(
            self,
            current=max(self.current - 1, 0),
            remaining=min(self.remaining + 1, self.max),
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CollectionLimits":
        return cls(
            current=int(data.get("current", 0) or 0),
            max=int(data.get("max", 5) or 0),
            remaining=int(data.get("remaining", 0) or 0),
            plan=data.get("plan") or "Free",
        )


# =============================================================================
# Entitlements
# =============================================================================

@dataclass
class PlanRef:
    """Reference to a subscription plan from the plan catalog."""
    id: str
    name: str
    plan_type: Optional[str] = None
    is_active: bool = True
    limit: int = 0
    price: Optional[float] = None

    @property
    def is_unlimited(self) -> bool:
        return self.limit == UNLIMITED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "planType": self.plan_type,
            "isActive": self.is_active,
            "limit": self.limit,
            "price": self.price,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PlanRef":
        """
        Create from a server plan payload, normalizing missing fields.

        `name` falls back to `planType`, then to "Premium Plan"; `planType`
        falls back to the name; `_id` and `id` are treated as one field.
        """
        name = data.get("name") or data.get("planType") or "Premium Plan"
        plan_id = data.get("id") or data.get("_id") or name
        limit = data.get("limit", data.get("maxSearchesPerDay"))
        return cls(
            id=str(plan_id),
            name=name,
            plan_type=data.get("planType") or name,
            is_active=bool(data.get("isActive", True)),
            limit=normalize_limit(limit),
            price=data.get("price"),
        )


@dataclass
class EntitlementSnapshot:
    """
    Point-in-time view of the user's subscription and usage.

    `limit == UNLIMITED` disables the `used <= limit` bound.
    """
    is_entitled: bool = False
    plan: Optional[PlanRef] = None
    expires_at: Optional[datetime] = None
    used: int = 0
    limit: int = 3
    warning: Optional[str] = None
    from_cache: bool = False

    @property
    def is_unlimited(self) -> bool:
        return self.limit == UNLIMITED

    @property
    def remaining(self) -> int:
        """Units left before the limit; UNLIMITED for unlimited plans."""
        if self.is_unlimited:
            return UNLIMITED
        return max(self.limit - self.used, 0)

    @property
    def is_consistent(self) -> bool:
        """An entitled snapshot must reference a plan."""
        return not (self.is_entitled and self.plan is None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isEntitled": self.is_entitled,
            "plan": self.plan.to_dict() if self.plan else None,
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
            "used": self.used,
            "limit": self.limit,
            "warning": self.warning,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EntitlementSnapshot":
        plan = data.get("plan")
        return cls(
            is_entitled=bool(data.get("isEntitled", False)),
            plan=PlanRef.from_dict(plan) if plan else None,
            expires_at=_parse_datetime(data.get("expiresAt")),
            used=int(data.get("used", 0) or 0),
            limit=normalize_limit(data.get("limit"), default=0),
            warning=data.get("warning"),
        )


# =============================================================================
# Payment confirmation
# =============================================================================

class ConfirmationState(Enum):
    """Lifecycle of a pending payment confirmation."""
    CREATED = "created"
    VERIFYING = "verifying"
    CONFIRMED = "confirmed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ConfirmationState.CONFIRMED, ConfirmationState.FAILED)


@dataclass
class PendingConfirmation:
    """
    Durable record of an externally-initiated payment awaiting confirmation.

    This is the only state that must survive a full reload. It is written
    before the user leaves for the payment page and deleted once the
    payment is confirmed or the user dismisses a failure.
    """
    plan_ref: Optional[str]
    order_id: Optional[str] = None
    link_id: Optional[str] = None
    payment_ref: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    attempts: int = 0
    state: ConfirmationState = ConfirmationState.CREATED
    last_error: Optional[str] = None

    @property
    def external_ref(self) -> Optional[str]:
        """Identifier used to key verification of this payment."""
        return self.order_id or self.link_id

    @property
    def missing_parameters(self) -> list:
        """Names of required identifying fields that are absent."""
        missing = []
        if not self.order_id and not self.link_id:
            missing.append("orderId or linkId")
        if not self.plan_ref:
            missing.append("planRef")
        return missing

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": PENDING_CONFIRMATION_VERSION,
            "externalRef": {"orderId": self.order_id, "linkId": self.link_id},
            "planRef": self.plan_ref,
            "paymentRef": self.payment_ref,
            "createdAt": self.created_at.isoformat(),
            "attempts": self.attempts,
            "state": self.state.value,
            "lastError": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PendingConfirmation":
        """
        Create from a persisted record.

        Raises:
            ValueError: If the record has an unknown version or state
        """
        version = data.get("version")
        if version != PENDING_CONFIRMATION_VERSION:
            raise ValueError(f"Unsupported pending confirmation version: {version}")

        external = data.get("externalRef") or {}
        return cls(
            plan_ref=data.get("planRef"),
            order_id=external.get("orderId"),
            link_id=external.get("linkId"),
            payment_ref=data.get("paymentRef"),
            created_at=_parse_datetime(data.get("createdAt")) or utcnow(),
            attempts=int(data.get("attempts", 0)),
            state=ConfirmationState(data.get("state", "created")),
            last_error=data.get("lastError"),
        )


# =============================================================================
# Results returned to UI collaborators
# =============================================================================

@dataclass
class ToggleResult:
    """Outcome of OptimisticCollection.toggle()."""
    ok: bool
    item_id: Optional[str] = None
    saved: Optional[bool] = None  # Membership after the call
    reason: Optional[str] = None
    limit_reached: bool = False


@dataclass
class VerificationOutcome:
    """Outcome of PaymentConfirmationEngine.verify()."""
    ok: bool
    state: ConfirmationState
    reason: Optional[str] = None
    error_code: Optional[str] = None
    attempts: int = 0
    from_cache: bool = False


@dataclass
class CheckoutResult:
    """Outcome of PaymentConfirmationEngine.begin_checkout()."""
    ok: bool
    payment_link: Optional[str] = None
    record: Optional[PendingConfirmation] = None
    reason: Optional[str] = None
    error_code: Optional[str] = None
