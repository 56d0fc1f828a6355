"""
entitlements.py — Billing events → Pro entitlement
===================================================
A pure projection: apply_event(record, event) returns the next
EntitlementRecord and never touches storage. The billing webhook route
loads, applies and persists.

Transition table:
  INITIAL_PURCHASE, RENEWAL   → entitled, tier from product id, expiry from event
  EXPIRATION                  → not entitled, expiry cleared, tier kept
  TRANSFER                    → sources revoked, destinations granted
  CANCELLATION, UNCANCELLATION, BILLING_ISSUE, PRODUCT_CHANGE → audit only
  anything else               → OTHER, acknowledged, no change

A cancelled subscription stays active until its EXPIRATION arrives.
Re-delivering an event whose id is already stamped on the record is a no-op.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Tuple


class BillingEventType(str, Enum):
    INITIAL_PURCHASE = "INITIAL_PURCHASE"
    RENEWAL = "RENEWAL"
    CANCELLATION = "CANCELLATION"
    UNCANCELLATION = "UNCANCELLATION"
    EXPIRATION = "EXPIRATION"
    BILLING_ISSUE = "BILLING_ISSUE"
    TRANSFER = "TRANSFER"
    PRODUCT_CHANGE = "PRODUCT_CHANGE"
    OTHER = "OTHER"

    @classmethod
    def parse(cls, raw) -> "BillingEventType":
        try:
            return cls(str(raw or "").upper())
        except ValueError:
            return cls.OTHER


GRANTING_EVENTS = frozenset({BillingEventType.INITIAL_PURCHASE, BillingEventType.RENEWAL})


@dataclass(frozen=True)
class EntitlementRecord:
    user_id: str
    is_entitled: bool = False
    plan_tier: str = "unknown"
    expires_at: Optional[datetime] = None
    last_event_id: Optional[str] = None


def _ms_to_datetime(value) -> Optional[datetime]:
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def _id_list(value) -> Tuple[str, ...]:
    if not value:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(str(v) for v in value if v)


@dataclass(frozen=True)
class BillingEvent:
    event_id: str
    type: BillingEventType
    subject_user_id: str = ""
    product_id: str = ""
    price: Optional[float] = None
    currency: Optional[str] = None
    expires_at: Optional[datetime] = None
    occurred_at: Optional[datetime] = None
    transferred_from: Tuple[str, ...] = ()
    transferred_to: Tuple[str, ...] = ()
    cancel_reason: Optional[str] = None
    period_type: Optional[str] = None
    store: Optional[str] = None
    environment: Optional[str] = None
    raw_type: str = ""

    @classmethod
    def from_payload(cls, payload) -> "BillingEvent":
        """Parses RevenueCat's {"event": {...}} envelope. Raises ValueError when malformed."""
        data = payload.get("event") if isinstance(payload, dict) else None
        if not isinstance(data, dict):
            raise ValueError("payload has no 'event' object")
        raw_type = str(data.get("type") or "")
        if not raw_type:
            raise ValueError("event has no type")
        return cls(
            event_id=str(data.get("id") or data.get("transaction_id") or ""),
            type=BillingEventType.parse(raw_type),
            subject_user_id=str(data.get("app_user_id") or ""),
            product_id=str(data.get("product_id") or ""),
            price=data.get("price"),
            currency=data.get("currency"),
            expires_at=_ms_to_datetime(data.get("expiration_at_ms")),
            occurred_at=_ms_to_datetime(data.get("event_timestamp_ms") or data.get("purchased_at_ms")),
            transferred_from=_id_list(data.get("transferred_from")),
            transferred_to=_id_list(data.get("transferred_to")),
            cancel_reason=data.get("cancel_reason"),
            period_type=data.get("period_type"),
            store=data.get("store"),
            environment=data.get("environment"),
            raw_type=raw_type,
        )


def derive_tier(product_id: str) -> str:
    product_id = product_id or ""
    if "annual" in product_id or "year" in product_id:
        return "annual"
    if "weekly" in product_id or "week" in product_id:
        return "weekly"
    if "monthly" in product_id or "month" in product_id:
        return "monthly"
    return "unknown"


def affected_users(event: BillingEvent) -> Tuple[str, ...]:
    if event.type == BillingEventType.TRANSFER:
        return event.transferred_from + event.transferred_to
    return (event.subject_user_id,) if event.subject_user_id else ()


def is_duplicate(record: EntitlementRecord, event: BillingEvent) -> bool:
    return bool(event.event_id) and record.last_event_id == event.event_id


def _grant(record, event):
    return replace(
        record,
        is_entitled=True,
        plan_tier=derive_tier(event.product_id),
        expires_at=event.expires_at,
        last_event_id=event.event_id or record.last_event_id,
    )


def _revoke(record, event):
    return replace(
        record,
        is_entitled=False,
        expires_at=None,
        last_event_id=event.event_id or record.last_event_id,
    )


def apply_event(record: EntitlementRecord, event: BillingEvent) -> EntitlementRecord:
    if is_duplicate(record, event):
        return record

    if event.type in GRANTING_EVENTS:
        return _grant(record, event)
    if event.type == BillingEventType.EXPIRATION:
        return _revoke(record, event)
    if event.type == BillingEventType.TRANSFER:
        if record.user_id in event.transferred_to:
            return _grant(record, event)
        if record.user_id in event.transferred_from:
            return _revoke(record, event)
    return record
