import re
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional, Tuple

from config import RECEIPT_CATEGORIES
from helpers import _clamp, _safe_float
from inference import MalformedOutput

DESCRIPTION_MAX_LEN = 50
DEFAULT_CURRENCY = "EUR"

_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")


@dataclass(frozen=True)
class ExtractedTransaction:
    amount: Decimal
    date: str
    category: str = "other"
    merchant: Optional[str] = None
    subcategory: Optional[str] = None
    description: str = ""
    currency: str = DEFAULT_CURRENCY
    items: Tuple[dict, ...] = ()
    confidence: float = 0.0

    def to_dict(self) -> dict:
        out = asdict(self)
        out["items"] = list(self.items)
        return out

    def to_row(self, user_id, source, scan_image_url=None, raw_analysis=None) -> dict:
        return {
            "user_id": user_id,
            "amount": self.amount,
            "merchant": self.merchant,
            "category": self.category,
            "subcategory": self.subcategory,
            "description": self.description,
            "date": self.date,
            "currency": self.currency,
            "source": source,
            "scan_image_url": scan_image_url,
            "ai_confidence": self.confidence,
            "metadata": {"items": list(self.items), "raw_analysis": dict(raw_analysis or {})},
        }


def _parse_amount(value) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value).strip().replace(",", "."))
    except InvalidOperation:
        return None
    return amount if amount.is_finite() else None


def _parse_date(value, now: datetime) -> str:
    if isinstance(value, str) and value.strip():
        text = value.strip()
        try:
            return datetime.fromisoformat(text.replace("Z", "+00:00")).isoformat()
        except ValueError:
            pass
    return now.isoformat()


def _currency(value) -> str:
    text = str(value or "").strip().upper()
    return text if _CURRENCY_RE.match(text) else DEFAULT_CURRENCY


def _items(value) -> Tuple[dict, ...]:
    if not isinstance(value, list):
        return ()
    out = []
    for item in value:
        if not isinstance(item, dict) or not item.get("name"):
            continue
        out.append({
            "name": str(item["name"]),
            "amount": _safe_float(item.get("amount"), None),
            "quantity": _safe_float(item.get("quantity"), 1.0),
        })
    return tuple(out)


def _optional_text(value) -> Optional[str]:
    text = str(value).strip() if value is not None else ""
    return text or None


def build_transaction(structured, provider_id=None, now: Optional[datetime] = None):
    """
    Validates a model's structured extraction.

    Returns ExtractedTransaction, or MalformedOutput when the model rejected
    the input (tag kept as reason) or no numeric amount can be read.
    """
    now = now or datetime.now(timezone.utc)
    rejection = structured.get("error")
    if rejection:
        return MalformedOutput(raw_text=str(structured), reason=str(rejection), provider_id=provider_id)

    amount = _parse_amount(structured.get("amount"))
    if amount is None:
        return MalformedOutput(raw_text=str(structured), reason="missing_amount", provider_id=provider_id)

    category = str(structured.get("category") or "").strip().lower()
    merchant = _optional_text(structured.get("merchant"))
    description = _optional_text(structured.get("description")) or merchant or ""

    return ExtractedTransaction(
        amount=amount,
        date=_parse_date(structured.get("date"), now),
        category=category if category in RECEIPT_CATEGORIES else "other",
        merchant=merchant,
        subcategory=_optional_text(structured.get("subcategory")),
        description=description[:DESCRIPTION_MAX_LEN],
        currency=_currency(structured.get("currency")),
        items=_items(structured.get("items")),
        confidence=_clamp(_safe_float(structured.get("confidence"), 0.0)),
    )
