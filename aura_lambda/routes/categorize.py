import config
from config import TRANSACTION_CATEGORIES, log_ctx, logger
from errors import ConfigurationError, ValidationError
from helpers import _clamp, _safe_float, api_response
from inference import InferenceRequest, Success, TaskKind
from keyword_categories import categorize_by_keywords
from orchestrator import FallbackOrchestrator
from providers import build_chain

CATEGORIZE_SYSTEM_PROMPT = "You categorise bank transactions. Answer with JSON only."

CATEGORIZE_PROMPT = """Categorise this bank transaction.

Description: {description}
{merchant_line}
{amount_line}

Answer ONLY with JSON in this format:
{{"category": "food|transport|shopping|housing|subscriptions|health|entertainment|income|other",
  "subcategory": "specific subcategory", "confidence": 0.85, "keywords": ["word1", "word2"]}}

Subcategories:
- food: restaurant, fast_food, groceries, coffee, delivery
- transport: taxi, train, public, fuel, parking
- shopping: online, electronics, clothing, sports
- housing: rent, energy, insurance, maintenance
- subscriptions: streaming, music, telecom, gym
- health: pharmacy, medical, dental, vision
- entertainment: cinema, travel, events, games
- income: salary, freelance, refund, gift
- other: unknown, fees, transfer"""


def _ai_result(structured) -> dict:
    category = str(structured.get("category") or "other").strip().lower()
    if category not in TRANSACTION_CATEGORIES:
        category = "other"
    keywords = structured.get("keywords")
    return {
        "category": category,
        "subcategory": str(structured.get("subcategory") or "unknown"),
        "confidence": _clamp(_safe_float(structured.get("confidence"), 0.7) or 0.7),
        "keywords": [str(k) for k in keywords] if isinstance(keywords, list) else [],
        "ai_used": True,
    }


def handle_categorize(principal, body):
    body = body or {}
    description = body.get("description")
    if not description or not str(description).strip():
        raise ValidationError("Description is required")
    merchant_name = body.get("merchant_name")
    amount = _safe_float(body.get("amount"), None)

    keyword_result = categorize_by_keywords(description, merchant_name, amount)
    if keyword_result["confidence"] >= config.KEYWORD_CONFIDENCE_THRESHOLD:
        return api_response(200, keyword_result)

    try:
        request = InferenceRequest(
            task=TaskKind.CATEGORIZE,
            providers=build_chain(TaskKind.CATEGORIZE),
            prompt=CATEGORIZE_PROMPT.format(
                description=description,
                merchant_line=f"Merchant: {merchant_name}" if merchant_name else "",
                amount_line=f"Amount: {amount}" if amount is not None else "",
            ),
            system_prompt=CATEGORIZE_SYSTEM_PROMPT,
            max_tokens=200,
            temperature=0.3,
        )
        result = FallbackOrchestrator(user_id=principal.user_id).run(request)
    except ConfigurationError as exc:
        logger.warning(
            f"AI categorisation unavailable, keeping keyword result: {exc.message}",
            extra=log_ctx(module_name="categorize", user_id=principal.user_id),
        )
        return api_response(200, keyword_result)

    if not isinstance(result, Success):
        logger.warning(
            f"AI categorisation failed ({type(result).__name__}), keeping keyword result",
            extra=log_ctx(module_name="categorize", user_id=principal.user_id),
        )
        return api_response(200, keyword_result)

    return api_response(200, _ai_result(result.structured))
