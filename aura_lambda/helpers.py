import decimal
import json
import re
import unicodedata
from datetime import date, datetime

from config import ALLOWED_ORIGIN, PROVIDER_METRICS_ENABLED, get_aws_client, log_ctx, logger

CORS_HEADERS = {
    "Access-Control-Allow-Origin": ALLOWED_ORIGIN,
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
    "Access-Control-Allow-Methods": "GET,POST,OPTIONS",
}


def _json_default(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, decimal.Decimal):
        return float(value)
    return str(value)


def api_response(status_code, body):
    return {
        "statusCode": status_code,
        "headers": {
            "Content-Type": "application/json; charset=utf-8",
            **CORS_HEADERS,
            "X-Content-Type-Options": "nosniff",
            "Cache-Control": "no-store",
        },
        "body": json.dumps(body, default=_json_default, ensure_ascii=False),
    }


def sse_response(frames):
    """Proxy response carrying already-encoded SSE frames."""
    return {
        "statusCode": 200,
        "headers": {
            "Content-Type": "text/event-stream",
            **CORS_HEADERS,
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        },
        "body": "".join(frames),
    }


def sse_frame(payload) -> str:
    return f"data: {json.dumps(payload, default=_json_default, ensure_ascii=False)}\n\n"


def _safe_float(value, default=0.0):
    if value is None:
        return default
    try:
        out = float(value)
        if out != out or out in (float("inf"), float("-inf")):
            return default
        return out
    except (ValueError, TypeError):
        return default


def _clamp(value, low=0.0, high=1.0):
    return max(low, min(high, value))


def _get_header(headers, key):
    if not headers:
        return ""
    if key in headers:
        return headers.get(key) or ""
    key_lower = key.lower()
    for h_key, h_val in headers.items():
        if (h_key or "").lower() == key_lower:
            return h_val or ""
    return ""


def _normalize_text(value):
    """Lowercase, accents stripped, everything but [a-z0-9] turned into spaces."""
    if value is None:
        return ""
    text = unicodedata.normalize("NFD", str(value).lower())
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    return re.sub(r"[^a-z0-9\s]", " ", text).strip()


def emit_provider_metrics(provider_id, task, outcome, elapsed_ms, input_tokens=0, output_tokens=0):
    if not PROVIDER_METRICS_ENABLED:
        return
    dims = [{"Name": "Provider", "Value": provider_id}, {"Name": "Task", "Value": task}]
    try:
        get_aws_client("cloudwatch").put_metric_data(
            Namespace="Aura/Providers",
            MetricData=[
                {"MetricName": "Attempts", "Value": 1, "Unit": "Count",
                 "Dimensions": dims + [{"Name": "Outcome", "Value": outcome}]},
                {"MetricName": "LatencyMs", "Value": elapsed_ms, "Unit": "Milliseconds", "Dimensions": dims},
                {"MetricName": "InputTokens", "Value": input_tokens, "Unit": "Count", "Dimensions": dims},
                {"MetricName": "OutputTokens", "Value": output_tokens, "Unit": "Count", "Dimensions": dims},
            ],
        )
    except Exception as e:
        logger.warning(
            f"Failed to emit provider metrics: {e}",
            extra=log_ctx(module_name="helpers", provider_id=provider_id),
        )
