"""
config.py — Aura Lambda Configuration & Structured Logging
==========================================================
Every log line carries:
  - timestamp, level, message
  - lambda_name: "aura"
  - request_id: Lambda invocation ID
  - user_id: authenticated principal (token subject)
  - module_name: which module/route produced the log
  - Optional: provider_id, task, step, outcome, elapsed_ms, event_type

CloudWatch Logs Insights example:
  fields @timestamp, message, provider_id, outcome, elapsed_ms
  | filter lambda_name="aura" and step="provider_attempt"
  | sort @timestamp desc

Secrets (API keys, webhook secret, DB password) may be given either as plain
values or as "ssm:<parameter-name>"; the latter is resolved through SSM
Parameter Store on first use.
"""

import json
import logging
import os

import boto3
from botocore.config import Config

from errors import ConfigurationError


# ══════════════════════════════════════════════════════════════════
#  Structured JSON Logger
# ══════════════════════════════════════════════════════════════════

class _StructuredFormatter(logging.Formatter):
    """
    Turns every log record into one JSON object CloudWatch can filter on.

    Context fields are attached to the LogRecord with extra=:
        logger.info("msg", extra=log_ctx(user_id="u-1", module_name="coach_chat"))
    """

    ALWAYS_FIELDS = ("lambda_name", "request_id", "user_id", "module_name")

    def format(self, record: logging.LogRecord) -> str:
        entry: dict = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "lambda_name": "aura",
            "message": record.getMessage(),
            "logger": record.name,
            "module_name": getattr(record, "module_name", record.module),
            # "-" when absent so queries never have to look for empty values
            "request_id": getattr(record, "request_id", "-"),
            "user_id": getattr(record, "user_id", "-"),
        }

        # PII such as e-mail only at DEBUG & ERROR
        email = getattr(record, "email", None)
        if email and record.levelno in (logging.DEBUG, logging.ERROR):
            entry["email"] = email

        if record.exc_info and record.exc_info[0]:
            entry["exception"] = self.formatException(record.exc_info)
            entry["exception_type"] = record.exc_info[0].__name__

        skip = {
            "msg", "args", "created", "filename", "funcName", "levelname",
            "levelno", "lineno", "module", "msecs", "name", "pathname",
            "process", "processName", "relativeCreated", "stack_info",
            "taskName", "thread", "threadName", "exc_info", "exc_text",
            "message",
        } | set(self.ALWAYS_FIELDS) | {"email"}

        for key, val in record.__dict__.items():
            if key not in skip and not key.startswith("_"):
                entry[key] = val

        return json.dumps(entry, ensure_ascii=False, default=str)


def _setup_logger() -> logging.Logger:
    root = logging.getLogger()
    root.setLevel(os.environ.get("LOG_LEVEL", "INFO"))
    formatter = _StructuredFormatter()
    if root.handlers:
        for h in root.handlers:
            h.setFormatter(formatter)
    else:
        handler = logging.StreamHandler()
        handler.setFormatter(formatter)
        root.addHandler(handler)
    return root


logger = _setup_logger()


def log_ctx(**kwargs) -> dict:
    """
    Builds the extra= dict for logger calls.

    Example:
        logger.info("Provider attempt finished", extra=log_ctx(
            module_name="orchestrator", provider_id="openai",
            outcome="success", elapsed_ms=412,
        ))
    """
    return kwargs


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str, default: str) -> tuple:
    raw = os.environ.get(name, default)
    return tuple(x.strip().lower() for x in raw.split(",") if x.strip())


# ══════════════════════════════════════════════════════════════════
#  AWS & App Config
# ══════════════════════════════════════════════════════════════════

AWS_REGION = os.environ.get("AWS_REGION", "us-east-1")
ALLOWED_ORIGIN = os.environ.get("ALLOWED_ORIGIN", "*")

DB_HOST = os.environ.get("DB_HOST")
DB_NAME = os.environ.get("DB_NAME")
DB_USER = os.environ.get("DB_USER")
DB_PASSWORD = os.environ.get("DB_PASSWORD")
DB_PORT = os.environ.get("DB_PORT", "5432")

AUTH_JWT_SECRET = os.environ.get("AUTH_JWT_SECRET")
AUTH_JWT_AUDIENCE = os.environ.get("AUTH_JWT_AUDIENCE", "authenticated")
AUTH_JWKS_URL = os.environ.get("AUTH_JWKS_URL")

# ── Providers ─────────────────────────────────────────────────────
OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY", "")
OPENAI_API_URL = os.environ.get("OPENAI_API_URL", "https://api.openai.com/v1/chat/completions")
OPENAI_VISION_MODEL = os.environ.get("OPENAI_VISION_MODEL", "gpt-4o")
OPENAI_TEXT_MODEL = os.environ.get("OPENAI_TEXT_MODEL", "gpt-4o-mini")
OPENAI_CHAT_MODEL = os.environ.get("OPENAI_CHAT_MODEL", "gpt-4o")

DEEPSEEK_API_KEY = os.environ.get("DEEPSEEK_API_KEY", "")
DEEPSEEK_API_URL = os.environ.get("DEEPSEEK_API_URL", "https://api.deepseek.com/v1/chat/completions")
DEEPSEEK_MODEL = os.environ.get("DEEPSEEK_MODEL", "deepseek-chat")

GEMINI_API_KEY = os.environ.get("GEMINI_API_KEY", "")
GEMINI_API_BASE = os.environ.get("GEMINI_API_BASE", "https://generativelanguage.googleapis.com/v1beta/models")
GEMINI_MODEL = os.environ.get("GEMINI_MODEL", "gemini-1.5-flash")

BEDROCK_ENABLED = _env_bool("BEDROCK_ENABLED")
BEDROCK_MODEL_ID = os.environ.get("BEDROCK_MODEL_ID", "anthropic.claude-3-haiku-20240307-v1:0")

PROVIDER_TIMEOUT_SECONDS = float(os.environ.get("PROVIDER_TIMEOUT_SECONDS", "30"))
PROVIDER_METRICS_ENABLED = _env_bool("PROVIDER_METRICS_ENABLED")

RECEIPT_PROVIDERS = _env_list("RECEIPT_PROVIDERS", "openai,gemini")
VOICE_PROVIDERS = _env_list("VOICE_PROVIDERS", "openai")
CATEGORIZE_PROVIDERS = _env_list("CATEGORIZE_PROVIDERS", "openai")
CHAT_PROVIDERS = _env_list("CHAT_PROVIDERS", "deepseek,openai")

CHAT_MAX_TOKENS = int(os.environ.get("CHAT_MAX_TOKENS", "500"))
CHAT_TEMPERATURE = float(os.environ.get("CHAT_TEMPERATURE", "0.7"))
KEYWORD_CONFIDENCE_THRESHOLD = float(os.environ.get("KEYWORD_CONFIDENCE_THRESHOLD", "0.8"))

# ── Billing webhook ───────────────────────────────────────────────
REVENUECAT_WEBHOOK_SECRET = os.environ.get("REVENUECAT_WEBHOOK_SECRET", "")
WEBHOOK_ALLOW_UNSIGNED = _env_bool("WEBHOOK_ALLOW_UNSIGNED")
WEBHOOK_SIGNATURE_HEADER = "X-RevenueCat-Signature"

LANGFUSE_PUBLIC_KEY = os.environ.get("LANGFUSE_PUBLIC_KEY")
LANGFUSE_SECRET_KEY = os.environ.get("LANGFUSE_SECRET_KEY")
LANGFUSE_HOST = os.environ.get("LANGFUSE_HOST", "https://cloud.langfuse.com")

# ── Category Definitions ──────────────────────────────────────────
RECEIPT_CATEGORIES = frozenset({
    "food", "transport", "housing", "health", "entertainment", "shopping",
    "subscription", "restaurant", "travel", "utilities", "other",
})

TRANSACTION_CATEGORIES = frozenset({
    "food", "transport", "shopping", "housing", "subscriptions",
    "health", "entertainment", "income", "other",
})


# ══════════════════════════════════════════════════════════════════
#  Lazy AWS Clients
# ══════════════════════════════════════════════════════════════════

_clients: dict = {}


def get_aws_client(service: str):
    """Cold start optimisation: boto3 clients are built on first use."""
    client = _clients.get(service)
    if client is None:
        logger.info(
            f"Initializing {service} client (lazy)",
            extra=log_ctx(module_name="config"),
        )
        client = boto3.client(
            service,
            region_name=AWS_REGION,
            config=Config(read_timeout=PROVIDER_TIMEOUT_SECONDS, retries={"max_attempts": 1}),
        )
        _clients[service] = client
    return client


_secret_cache: dict = {}


def resolve_secret(value):
    """Returns the secret as-is, or fetches "ssm:<name>" from Parameter Store."""
    if not value or not str(value).startswith("ssm:"):
        return value or ""
    if value in _secret_cache:
        return _secret_cache[value]
    try:
        resp = get_aws_client("ssm").get_parameter(Name=value[4:], WithDecryption=True)
    except Exception:
        logger.error(
            "Failed to fetch secret from SSM",
            extra=log_ctx(module_name="config", parameter=value[4:]),
            exc_info=True,
        )
        raise ConfigurationError("Secure credential fetch failed.")
    secret = resp["Parameter"]["Value"]
    _secret_cache[value] = secret
    return secret


# ── Langfuse (lazy init) ──────────────────────────────────────────
langfuse_client = None


def get_langfuse():
    global langfuse_client
    if langfuse_client is None:
        try:
            from langfuse import Langfuse
            pk_val = resolve_secret(LANGFUSE_PUBLIC_KEY)
            sk_val = resolve_secret(LANGFUSE_SECRET_KEY)
            if pk_val and sk_val:
                langfuse_client = Langfuse(public_key=pk_val, secret_key=sk_val, host=LANGFUSE_HOST)
            else:
                langfuse_client = False
        except Exception:
            logger.error(
                "Langfuse init error",
                extra=log_ctx(module_name="config"),
                exc_info=True,
            )
            langfuse_client = False
    return langfuse_client if langfuse_client is not False else None
