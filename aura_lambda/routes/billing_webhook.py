import base64
import binascii
import json
from datetime import datetime, timezone

import config
from config import log_ctx, logger
from db import RecordStore, log_analytics_event
from entitlements import (
    BillingEvent, BillingEventType, EntitlementRecord,
    affected_users, apply_event, is_duplicate,
)
from errors import AuraError, AuthenticationError
from helpers import _get_header, api_response
from webhook_auth import WebhookAuthenticator

# event type → (ack message, analytics event name)
EVENT_OUTCOMES = {
    BillingEventType.INITIAL_PURCHASE: ("Purchase processed", "purchase_completed"),
    BillingEventType.RENEWAL: ("Renewal processed", "subscription_renewed"),
    BillingEventType.CANCELLATION: ("Cancellation logged", "subscription_cancelled"),
    BillingEventType.UNCANCELLATION: ("Uncancellation logged", "subscription_uncancelled"),
    BillingEventType.EXPIRATION: ("Expiration processed", "subscription_expired"),
    BillingEventType.BILLING_ISSUE: ("Billing issue logged", "billing_issue"),
    BillingEventType.PRODUCT_CHANGE: ("Product change logged", "subscription_product_changed"),
    BillingEventType.TRANSFER: ("Transfer processed", None),
}


def _raw_body(event) -> bytes:
    body = event.get("body") or ""
    if event.get("isBase64Encoded"):
        try:
            return base64.b64decode(body)
        except (binascii.Error, ValueError):
            return b""
    return body.encode("utf-8") if isinstance(body, str) else bytes(body)


def _load_record(store, user_id):
    rows = store.get("profiles", {"id": user_id}, limit=1)
    if not rows:
        return EntitlementRecord(user_id=user_id), False
    row = rows[0]
    return EntitlementRecord(
        user_id=user_id,
        is_entitled=bool(row.get("is_pro")),
        plan_tier=row.get("pro_plan") or "unknown",
        expires_at=row.get("pro_expires_at"),
        last_event_id=row.get("pro_last_event_id"),
    ), True


def _persist(store, record, exists):
    values = {
        "is_pro": record.is_entitled,
        "pro_plan": record.plan_tier,
        "pro_expires_at": record.expires_at,
        "pro_last_event_id": record.last_event_id,
        "updated_at": datetime.now(timezone.utc),
    }
    if exists:
        store.update("profiles", values, {"id": record.user_id})
    elif record.is_entitled:
        store.insert("profiles", {"id": record.user_id, **values})


def _analytics_properties(billing_event):
    props = {
        "plan_id": billing_event.product_id or None,
        "revenue": billing_event.price,
        "currency": billing_event.currency,
        "period_type": billing_event.period_type,
        "store": billing_event.store,
        "environment": billing_event.environment,
        "cancel_reason": billing_event.cancel_reason,
        "expires_at": billing_event.expires_at.isoformat() if billing_event.expires_at else None,
    }
    return {k: v for k, v in props.items() if v is not None}


def handle_billing_webhook(event, store=None, authenticator=None):
    method = (event.get("httpMethod") or "").upper()
    if method != "POST":
        return api_response(405, {"success": False, "message": "Method not allowed"})

    try:
        return _process_delivery(event, store, authenticator)
    except AuthenticationError as exc:
        return api_response(401, {"success": False, "message": exc.message})
    except AuraError as exc:
        logger.error(
            f"Billing webhook failed: {exc.message}",
            extra=log_ctx(module_name="billing_webhook", code=exc.code),
        )
        return api_response(exc.status_code or 500, {"success": False, "message": "Internal server error"})
    except Exception:
        logger.error(
            "Billing webhook failed unexpectedly",
            extra=log_ctx(module_name="billing_webhook"),
            exc_info=True,
        )
        return api_response(500, {"success": False, "message": "Internal server error"})


def _process_delivery(event, store, authenticator):
    raw = _raw_body(event)
    authenticator = authenticator or WebhookAuthenticator(
        config.REVENUECAT_WEBHOOK_SECRET, allow_unsigned=config.WEBHOOK_ALLOW_UNSIGNED,
    )
    authenticator.verify(raw, _get_header(event.get("headers"), config.WEBHOOK_SIGNATURE_HEADER))

    try:
        billing_event = BillingEvent.from_payload(json.loads(raw))
    except ValueError as exc:
        logger.warning(
            f"Unparseable billing event: {exc}",
            extra=log_ctx(module_name="billing_webhook"),
        )
        return api_response(400, {"success": False, "message": "Invalid payload"})

    ctx = log_ctx(
        module_name="billing_webhook", event_type=billing_event.raw_type,
        user_id=billing_event.subject_user_id or "-", event_id=billing_event.event_id or "-",
    )
    logger.info("Billing event received", extra=ctx)

    message, analytics_name = EVENT_OUTCOMES.get(billing_event.type, ("Event ignored", None))
    if billing_event.type == BillingEventType.OTHER:
        return api_response(200, {"success": True, "message": message})

    store = store or RecordStore()
    duplicate = False
    for user_id in affected_users(billing_event):
        current, exists = _load_record(store, user_id)
        if is_duplicate(current, billing_event):
            duplicate = True
            continue
        updated = apply_event(current, billing_event)
        if updated != current:
            _persist(store, updated, exists)

    if duplicate:
        logger.info("Duplicate billing event ignored", extra=ctx)
        return api_response(200, {"success": True, "message": "Duplicate event ignored"})

    if analytics_name and billing_event.subject_user_id:
        log_analytics_event(
            store, billing_event.subject_user_id, analytics_name, _analytics_properties(billing_event),
        )

    logger.info(f"Billing event applied: {message}", extra=ctx)
    return api_response(200, {"success": True, "message": message})
