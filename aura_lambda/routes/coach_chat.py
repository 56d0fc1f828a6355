"""
coach_chat.py — Aura financial coach (streaming)
=================================================
  1) Load the user's financial context (balance, month-to-date income and
     spend, subscriptions with price-hike "vampires", goals, unread insights)
  2) Build the coach system prompt from it
  3) Open a streaming completion through the fallback chain
  4) Relay tokens as SSE frames; the final reply (action tag removed) is
     stored in coach_messages

Errors before the first frame (validation, configuration, every provider
down) are raised and rendered as JSON. Once frames flow, the stream always
ends with "data: [DONE]".
"""

from datetime import datetime, timezone

import config
from config import log_ctx, logger
from db import RecordStore
from errors import PersistenceError, UpstreamError, ValidationError
from helpers import _safe_float, sse_response
from inference import ChatTurn, InferenceRequest, ProviderError, TaskKind
from orchestrator import FallbackOrchestrator
from providers import build_chain
from stream_relay import StreamRelay

_HISTORY_ROLES = ("user", "assistant")


# ══════════════════════════════════════════════════════════════════
#  Financial context
# ══════════════════════════════════════════════════════════════════

def _safe_get(store, table, filters, **kwargs):
    try:
        return store.get(table, filters, **kwargs)
    except PersistenceError as exc:
        logger.warning(
            f"Context read skipped for {table}: {exc.message}",
            extra=log_ctx(module_name="coach_chat", step="context"),
        )
        return []


def fetch_financial_context(store, user_id, now=None) -> dict:
    now = now or datetime.now(timezone.utc)
    start_of_month = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)

    accounts = _safe_get(store, "accounts", {"user_id": user_id})
    balance = sum(_safe_float(a.get("balance")) for a in accounts)

    income, expenses = 0.0, 0.0
    by_category: dict = {}
    for t in _safe_get(store, "transactions", {"user_id": user_id, "date__gte": start_of_month.isoformat()}):
        amount = _safe_float(t.get("amount"))
        if amount > 0:
            income += amount
        else:
            expenses += abs(amount)
            cat = t.get("category") or "other"
            by_category[cat] = by_category.get(cat, 0.0) + abs(amount)

    top_categories = [
        {
            "category": cat,
            "amount": amount,
            "percentage": (amount / expenses * 100) if expenses > 0 else 0.0,
        }
        for cat, amount in sorted(by_category.items(), key=lambda kv: kv[1], reverse=True)[:5]
    ]

    subscriptions = []
    vampires = []
    for s in _safe_get(store, "subscriptions", {"user_id": user_id}):
        amount = _safe_float(s.get("amount"))
        subscriptions.append({
            "id": s.get("id"),
            "name": s.get("name") or "",
            "amount": amount,
            "billing_cycle": s.get("billing_cycle") or "monthly",
        })
        if s.get("is_vampire"):
            vampires.append({
                "subscription_id": s.get("id"),
                "name": s.get("name") or "",
                "old_amount": _safe_float(s.get("previous_amount")) or amount,
                "new_amount": amount,
            })

    goals = []
    for g in _safe_get(store, "budget_goals", {"user_id": user_id}):
        current = _safe_float(g.get("current_amount"))
        target = _safe_float(g.get("target_amount"))
        goals.append({
            "id": g.get("id"),
            "name": g.get("name") or "",
            "current_amount": current,
            "target_amount": target or 1.0,
            "progress_percentage": (current / target * 100) if target > 0 else 0.0,
        })

    insights = _safe_get(store, "ai_insights", {"user_id": user_id, "is_read": False}, limit=5)

    return {
        "current_balance": balance,
        "monthly_income": income,
        "monthly_expenses": expenses,
        "top_categories": top_categories,
        "subscriptions": subscriptions,
        "vampires": vampires,
        "goals": goals,
        "unread_insights": [i.get("title") for i in insights if i.get("title")],
    }


def _vampire_increase(v) -> float:
    if v["old_amount"] <= 0:
        return 0.0
    return (v["new_amount"] - v["old_amount"]) / v["old_amount"] * 100


def build_system_prompt(context: dict) -> str:
    top = ", ".join(
        f"{c['category']}: {c['amount']:.2f}€ ({c['percentage']:.0f}%)" for c in context["top_categories"]
    )
    subs = ", ".join(f"{s['name']}: {s['amount']:.2f}€/{s['billing_cycle']}" for s in context["subscriptions"])
    goals = ", ".join(
        f"{g['name']}: {g['current_amount']:.0f}/{g['target_amount']:.0f}€ ({g['progress_percentage']:.0f}%)"
        for g in context["goals"]
    )
    lines = [
        "You are Aura, a warm, caring and expert personal finance coach.",
        "Your tone is encouraging but direct, never condescending. Use emojis sparingly.",
        "",
        "USER FINANCIAL CONTEXT:",
        f"- Current balance: {context['current_balance']:.2f}€",
        f"- Monthly income: {context['monthly_income']:.2f}€",
        f"- Spending this month: {context['monthly_expenses']:.2f}€",
        f"- Top spending: {top or 'No data'}",
        f"- Subscriptions: {subs or 'None'}",
    ]
    if context["vampires"]:
        alerts = ", ".join(f"{v['name']} (+{_vampire_increase(v):.0f}%)" for v in context["vampires"])
        lines.append(f"- Vampire alerts: {alerts}")
    lines.append(f"- Goals: {goals or 'None'}")
    if context["unread_insights"]:
        lines.append(f"- Unread insights: {'; '.join(context['unread_insights'])}")
    lines += [
        "",
        "Answer in a personalised way using this data.",
        "When an action is possible (create a goal, flag a subscription, show a chart),",
        "include an action tag with structured JSON in your reply:",
        '<action>{"type": "create_goal" | "mark_subscription" | "show_chart", "data": {...}}</action>',
        "",
        "Be concise but useful. Three or four sentences at most.",
    ]
    return "\n".join(lines)


# ══════════════════════════════════════════════════════════════════
#  Persistence
# ══════════════════════════════════════════════════════════════════

def save_message(store, conversation_id, user_id, content, actions):
    if not conversation_id:
        logger.info(
            "No conversation id, coach reply not stored",
            extra=log_ctx(module_name="coach_chat", user_id=user_id),
        )
        return
    try:
        store.insert("coach_messages", {
            "conversation_id": conversation_id,
            "role": "coach",
            "content": content,
            "actions": actions or None,
        })
        store.update(
            "coach_conversations",
            {"last_message_at": datetime.now(timezone.utc)},
            {"id": conversation_id},
        )
    except Exception:
        logger.error(
            "Error saving coach message",
            extra=log_ctx(module_name="coach_chat", user_id=user_id, conversation_id=conversation_id),
            exc_info=True,
        )


# ══════════════════════════════════════════════════════════════════
#  Handler
# ══════════════════════════════════════════════════════════════════

def _history(raw) -> tuple:
    if not isinstance(raw, list):
        return ()
    turns = []
    for h in raw:
        if isinstance(h, dict) and h.get("role") in _HISTORY_ROLES and isinstance(h.get("content"), str):
            turns.append(ChatTurn(role=h["role"], content=h["content"]))
    return tuple(turns)


def stream_coach_chat(principal, body, store=None):
    """Opens the reply stream and returns an iterator of SSE frames."""
    body = body or {}
    message = body.get("message")
    if not body.get("userId") or not message:
        raise ValidationError("Missing required fields")
    if body["userId"] != principal.user_id:
        raise ValidationError("User ID mismatch", status_code=403)

    user_id = principal.user_id
    store = store or RecordStore()
    context = fetch_financial_context(store, user_id)

    request = InferenceRequest(
        task=TaskKind.CHAT_TURN,
        providers=build_chain(TaskKind.CHAT_TURN),
        prompt=str(message),
        system_prompt=build_system_prompt(context),
        history=_history(body.get("conversationHistory")),
        max_tokens=config.CHAT_MAX_TOKENS,
        temperature=config.CHAT_TEMPERATURE,
    )
    session = FallbackOrchestrator(user_id=user_id).open_stream(request)
    if isinstance(session, ProviderError):
        raise UpstreamError(
            "AI response generation failed",
            details={"provider": session.provider_id, "message": session.raw_message},
        )

    logger.info(
        "Coach stream opened",
        extra=log_ctx(
            module_name="coach_chat", user_id=user_id,
            provider_id=session.provider_id, used_fallback=session.used_fallback,
        ),
    )
    conversation_id = body.get("conversationId")
    relay = StreamRelay(
        session,
        on_complete=lambda text, actions: save_message(store, conversation_id, user_id, text, actions),
        user_id=user_id,
    )
    return relay.frames()


def handle_coach_chat(principal, body, store=None):
    frames = stream_coach_chat(principal, body, store)
    try:
        return sse_response(frames)
    finally:
        frames.close()
