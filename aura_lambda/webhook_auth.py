import hashlib
import hmac

from config import log_ctx, logger, resolve_secret
from errors import AuthenticationError, ConfigurationError


def compute_signature(secret: str, raw_body: bytes) -> str:
    return hmac.new(
        key=secret.encode("utf-8"),
        msg=raw_body,
        digestmod=hashlib.sha256,
    ).hexdigest()


class WebhookAuthenticator:
    """HMAC-SHA-256 check of the exact raw webhook body."""

    def __init__(self, secret, allow_unsigned: bool = False):
        self.secret = secret or ""
        self.allow_unsigned = allow_unsigned

    def verify(self, raw_body: bytes, signature) -> None:
        if not signature:
            raise AuthenticationError("Missing webhook signature")

        secret = resolve_secret(self.secret)
        if not secret:
            if self.allow_unsigned:
                logger.warning(
                    "Webhook secret not configured, accepting unsigned delivery",
                    extra=log_ctx(module_name="webhook_auth"),
                )
                return
            raise ConfigurationError("Webhook secret not configured")

        if isinstance(raw_body, str):
            raw_body = raw_body.encode("utf-8")
        expected = compute_signature(secret, raw_body).encode("ascii")
        provided = str(signature).strip().lower().encode("utf-8")
        if not hmac.compare_digest(expected, provided):
            logger.warning("Webhook signature mismatch", extra=log_ctx(module_name="webhook_auth"))
            raise AuthenticationError("Invalid signature")
