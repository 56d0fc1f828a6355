import json

from auth import authenticate
from config import log_ctx, logger
from errors import AuraError
from helpers import api_response
from routes.analyze_receipt import handle_analyze_receipt
from routes.billing_webhook import handle_billing_webhook
from routes.categorize import handle_categorize
from routes.coach_chat import handle_coach_chat

AUTHENTICATED_ROUTES = {
    "/analyze-receipt": handle_analyze_receipt,
    "/categorize-transaction": handle_categorize,
    "/coach-chat": handle_coach_chat,
}

WEBHOOK_PATH = "/revenuecat-webhook"


def _route_path(event):
    path = event.get("rawPath") or event.get("path") or ""
    path = "/" + path.strip("/")
    # API Gateway stages and function prefixes ("/prod/...", "/functions/v1/...")
    for known in list(AUTHENTICATED_ROUTES) + [WEBHOOK_PATH]:
        if path.endswith(known):
            return known
    return path


def _parse_body(event):
    raw = event.get("body")
    if not raw:
        return {}
    try:
        body = json.loads(raw)
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def lambda_handler(event, context):
    event = event or {}
    method = (event.get("httpMethod") or event.get("requestContext", {}).get("http", {}).get("method") or "").upper()
    event["httpMethod"] = method
    path = _route_path(event)
    request_id = getattr(context, "aws_request_id", "-")

    logger.info(
        f"{method} {path}",
        extra=log_ctx(module_name="lambda_function", request_id=request_id),
    )

    if method == "OPTIONS":
        return api_response(200, {"ok": True})

    try:
        if path == WEBHOOK_PATH:
            return handle_billing_webhook(event)

        handler = AUTHENTICATED_ROUTES.get(path)
        if handler is None:
            return api_response(404, {"error": "Not found"})
        if method != "POST":
            return api_response(405, {"error": "Method not allowed"})

        principal = authenticate(event)
        logger.debug(
            "Request authenticated",
            extra=log_ctx(
                module_name="lambda_function", request_id=request_id,
                user_id=principal.user_id, email=principal.email,
            ),
        )
        body = _parse_body(event)
        if body is None:
            return api_response(400, {"error": "Invalid JSON body"})
        return handler(principal, body)

    except AuraError as exc:
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(
            f"Request failed: {exc.message}",
            extra=log_ctx(module_name="lambda_function", request_id=request_id, code=exc.code),
        )
        return api_response(exc.status_code, exc.to_body())
    except Exception:
        logger.error(
            "Unhandled error",
            extra=log_ctx(module_name="lambda_function", request_id=request_id),
            exc_info=True,
        )
        return api_response(500, {"error": "Internal server error"})
