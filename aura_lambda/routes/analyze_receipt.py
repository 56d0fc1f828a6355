from datetime import datetime, timezone

from config import log_ctx, logger
from db import RecordStore
from errors import UpstreamError, ValidationError
from helpers import api_response
from inference import InferenceRequest, MalformedOutput, ProviderError, TaskKind
from orchestrator import FallbackOrchestrator
from providers import build_chain
from transactions import build_transaction

RECEIPT_SYSTEM_PROMPT = "You analyse receipts and invoices and answer with valid JSON only."

RECEIPT_PROMPT = """Analyse this receipt image and return ONLY a valid JSON object:
{{
  "amount": number (total incl. tax, negative for an expense, positive for a refund),
  "merchant": string,
  "date": string (ISO 8601, use {today} if not visible),
  "category": one of food/transport/housing/health/entertainment/shopping/subscription/restaurant/travel/utilities/other,
  "subcategory": string,
  "description": string (max 50 characters),
  "currency": string (ISO 4217, EUR by default),
  "items": [{{"name": string, "amount": number, "quantity": number}}],
  "confidence": number between 0 and 1
}}
If the image is not a receipt or invoice, return {{"error": "not_a_receipt"}}.
If the image is blurry or unreadable, return {{"error": "image_not_clear"}}."""

VOICE_PROMPT = """Extract the transaction described in this dictated note and return ONLY a valid JSON object:
"{transcript}"

{{
  "amount": number (negative for an expense),
  "merchant": string (if mentioned),
  "category": one of food/transport/housing/health/entertainment/shopping/subscription/restaurant/travel/utilities/other,
  "description": string (short),
  "confidence": number between 0 and 1
}}

Example: "Spent 25 euros at McDo" → {{"amount": -25, "merchant": "McDonald's", "category": "food", "description": "McDo meal", "confidence": 0.95}}"""


def _build_request(body, now):
    transcript = (body.get("transcript") or "").strip()
    if transcript:
        return InferenceRequest(
            task=TaskKind.EXTRACT_VOICE,
            providers=build_chain(TaskKind.EXTRACT_VOICE),
            prompt=VOICE_PROMPT.format(transcript=transcript),
            max_tokens=500,
            temperature=0.2,
            json_mode=True,
        ), "voice"

    image_url = body.get("imageUrl") or None
    image_base64 = body.get("imageBase64") or None
    if image_url or image_base64:
        return InferenceRequest(
            task=TaskKind.EXTRACT_RECEIPT,
            providers=build_chain(TaskKind.EXTRACT_RECEIPT),
            prompt=RECEIPT_PROMPT.format(today=now.isoformat()),
            system_prompt=RECEIPT_SYSTEM_PROMPT,
            image_url=image_url,
            image_base64=image_base64,
            max_tokens=1000,
            temperature=0.2,
        ), "scan"

    raise ValidationError("Missing imageUrl, imageBase64, or transcript")


def handle_analyze_receipt(principal, body, store=None):
    body = body or {}
    if body.get("userId") != principal.user_id:
        raise ValidationError("User ID mismatch", status_code=403)

    now = datetime.now(timezone.utc)
    request, source = _build_request(body, now)
    result = FallbackOrchestrator(user_id=principal.user_id).run(request)

    if isinstance(result, ProviderError):
        logger.error(
            f"All providers failed for {source} extraction",
            extra=log_ctx(module_name="analyze_receipt", user_id=principal.user_id, provider_id=result.provider_id),
        )
        raise UpstreamError(
            "AI analysis failed",
            details={"provider": result.provider_id, "message": result.raw_message},
        )

    if isinstance(result, MalformedOutput):
        return api_response(422, {"error": result.reason})

    transaction = build_transaction(result.structured, provider_id=result.provider_id, now=now)
    if isinstance(transaction, MalformedOutput):
        logger.info(
            f"Extraction rejected: {transaction.reason}",
            extra=log_ctx(module_name="analyze_receipt", user_id=principal.user_id, provider_id=result.provider_id),
        )
        return api_response(422, {"error": transaction.reason})

    store = store or RecordStore()
    row = transaction.to_row(
        principal.user_id, source,
        scan_image_url=body.get("imageUrl") or None,
        raw_analysis=result.structured,
    )
    store.insert("transactions", row)

    logger.info(
        "Transaction extracted and saved",
        extra=log_ctx(
            module_name="analyze_receipt", user_id=principal.user_id,
            provider_id=result.provider_id, source=source, category=transaction.category,
        ),
    )
    return api_response(200, transaction.to_dict())
