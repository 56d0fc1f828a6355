"""
providers.py — Upstream model vendors behind one contract
==========================================================
Every vendor implements the same ProviderClient capability:
  - complete(request)    → full response text (synchronous call)
  - open_stream(request) → ProviderStream of raw SSE byte chunks
  - extract_stream_delta(frame) → text fragment carried by one decoded frame

Vendors differ only in endpoint, body shape, auth header and the path to the
text payload. Failures (non-2xx, transport error, timeout, empty content)
are raised as ProviderCallError; the orchestrator converts them into values.

HTTP vendors (OpenAI, DeepSeek, Gemini) go through urllib.request. The socket
timeout bounds each read and a deadline bounds the whole body. Bedrock goes
through boto3 and its stream events are re-framed as "data: <json>" lines so
the relay never sees vendor shapes.
"""

import json
import time
import urllib.error
import urllib.request
from urllib.parse import quote

from botocore.exceptions import BotoCoreError, ClientError

import config
from config import get_aws_client, log_ctx, logger, resolve_secret
from errors import ConfigurationError, ProviderCallError
from helpers import emit_provider_metrics
from inference import TaskKind

_STREAM_READ_BYTES = 4096


class ProviderStream:
    """An open upstream stream. close() releases the connection."""

    def __init__(self, provider_id, chunks, extract_delta, close):
        self.provider_id = provider_id
        self.chunks = chunks
        self.extract_delta = extract_delta
        self._close = close
        self.closed = False

    def close(self):
        if self.closed:
            return
        self.closed = True
        try:
            self._close()
        except Exception:
            logger.warning(
                "Upstream stream close failed",
                extra=log_ctx(module_name="providers", provider_id=self.provider_id),
                exc_info=True,
            )


def _iter_body(resp, provider_id, deadline):
    """Yields body chunks; raises ProviderCallError once the call outlives its deadline."""
    read = getattr(resp, "read1", None) or resp.read
    try:
        while True:
            chunk = read(_STREAM_READ_BYTES)
            if not chunk:
                return
            if time.monotonic() > deadline:
                raise ProviderCallError(provider_id, "response exceeded the provider timeout")
            yield chunk
    finally:
        resp.close()


def _error_body(exc) -> str:
    try:
        return exc.read().decode("utf-8", errors="replace")[:500]
    except Exception:
        return exc.reason if isinstance(exc.reason, str) else ""


class ProviderClient:
    provider_id = "base"
    supports_images = True

    def is_configured(self) -> bool:
        return True

    def complete(self, request) -> str:
        raise NotImplementedError

    def open_stream(self, request) -> ProviderStream:
        raise NotImplementedError

    def extract_stream_delta(self, frame: dict) -> str:
        return ""

    def _check_input(self, request):
        if request.has_image and not self.supports_images:
            raise ProviderCallError(self.provider_id, "image input is not supported")


# ══════════════════════════════════════════════════════════════════
#  HTTPS vendors
# ══════════════════════════════════════════════════════════════════

class HttpProviderClient(ProviderClient):
    def __init__(self, api_key, endpoint, model=None, timeout=None):
        self.api_key = api_key or ""
        self.endpoint = endpoint
        self.model = model
        self.timeout = timeout if timeout is not None else config.PROVIDER_TIMEOUT_SECONDS

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def build_body(self, request, stream: bool) -> dict:
        raise NotImplementedError

    def extract_text(self, payload: dict) -> str:
        raise NotImplementedError

    def request_url(self, request, stream: bool) -> str:
        return self.endpoint

    def request_headers(self) -> dict:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {resolve_secret(self.api_key)}",
        }

    def _post(self, request, stream: bool):
        body = json.dumps(self.build_body(request, stream), ensure_ascii=False).encode("utf-8")
        req = urllib.request.Request(
            self.request_url(request, stream),
            data=body,
            headers=self.request_headers(),
            method="POST",
        )
        try:
            resp = urllib.request.urlopen(req, timeout=self.timeout)
        except urllib.error.HTTPError as exc:
            raise ProviderCallError(
                self.provider_id, f"HTTP {exc.code}: {_error_body(exc)}", status=exc.code,
            ) from exc
        except OSError as exc:
            raise ProviderCallError(self.provider_id, f"transport failure: {exc}") from exc
        status = getattr(resp, "status", 200)
        if status < 200 or status >= 300:
            resp.close()
            raise ProviderCallError(self.provider_id, f"HTTP {status}", status=status)
        return resp

    def complete(self, request) -> str:
        self._check_input(request)
        deadline = time.monotonic() + self.timeout
        resp = self._post(request, stream=False)
        status = getattr(resp, "status", 200)
        try:
            raw = b"".join(_iter_body(resp, self.provider_id, deadline))
        except OSError as exc:
            raise ProviderCallError(self.provider_id, f"read failure: {exc}", status=status) from exc
        try:
            payload = json.loads(raw)
        except ValueError as exc:
            raise ProviderCallError(self.provider_id, "response body is not JSON", status=status) from exc
        text = self.extract_text(payload) if isinstance(payload, dict) else ""
        if not text or not text.strip():
            raise ProviderCallError(self.provider_id, "empty content in response", status=status)
        return text

    def open_stream(self, request) -> ProviderStream:
        self._check_input(request)
        deadline = time.monotonic() + self.timeout
        resp = self._post(request, stream=True)
        return ProviderStream(
            self.provider_id, _iter_body(resp, self.provider_id, deadline),
            self.extract_stream_delta, resp.close,
        )


class OpenAIProvider(HttpProviderClient):
    provider_id = "openai"

    def __init__(self, api_key=None, endpoint=None, model=None, timeout=None):
        super().__init__(
            api_key if api_key is not None else config.OPENAI_API_KEY,
            endpoint or config.OPENAI_API_URL,
            model=model,
            timeout=timeout,
        )

    def model_for(self, request) -> str:
        if self.model:
            return self.model
        if request.task == TaskKind.EXTRACT_RECEIPT:
            return config.OPENAI_VISION_MODEL
        if request.task == TaskKind.CHAT_TURN:
            return config.OPENAI_CHAT_MODEL
        return config.OPENAI_TEXT_MODEL

    @staticmethod
    def build_messages(request) -> list:
        messages = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.extend(turn.as_message() for turn in request.history)
        if request.has_image:
            url = request.image_url
            if request.image_base64:
                url = f"data:image/jpeg;base64,{request.image_base64}"
            messages.append({
                "role": "user",
                "content": [
                    {"type": "image_url", "image_url": {"url": url, "detail": "high"}},
                    {"type": "text", "text": request.prompt},
                ],
            })
        elif request.prompt:
            messages.append({"role": "user", "content": request.prompt})
        return messages

    def build_body(self, request, stream: bool) -> dict:
        body = {
            "model": self.model_for(request),
            "messages": self.build_messages(request),
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
        }
        if request.json_mode:
            body["response_format"] = {"type": "json_object"}
        if stream:
            body["stream"] = True
        return body

    def extract_text(self, payload: dict) -> str:
        choices = payload.get("choices") or []
        if not choices:
            return ""
        message = choices[0].get("message") or {}
        return message.get("content") or ""

    def extract_stream_delta(self, frame: dict) -> str:
        choices = frame.get("choices") or []
        if not choices:
            return ""
        first = choices[0] or {}
        delta = first.get("delta") or {}
        return delta.get("content") or first.get("text") or ""


class DeepSeekProvider(OpenAIProvider):
    """OpenAI-compatible chat endpoint, text only."""

    provider_id = "deepseek"
    supports_images = False

    def __init__(self, api_key=None, endpoint=None, model=None, timeout=None):
        super().__init__(
            api_key if api_key is not None else config.DEEPSEEK_API_KEY,
            endpoint or config.DEEPSEEK_API_URL,
            model=model or config.DEEPSEEK_MODEL,
            timeout=timeout,
        )


class GeminiProvider(HttpProviderClient):
    provider_id = "gemini"

    def __init__(self, api_key=None, endpoint=None, model=None, timeout=None):
        super().__init__(
            api_key if api_key is not None else config.GEMINI_API_KEY,
            endpoint or config.GEMINI_API_BASE,
            model=model or config.GEMINI_MODEL,
            timeout=timeout,
        )

    def request_url(self, request, stream: bool) -> str:
        key = quote(resolve_secret(self.api_key), safe="")
        if stream:
            return f"{self.endpoint}/{self.model}:streamGenerateContent?alt=sse&key={key}"
        return f"{self.endpoint}/{self.model}:generateContent?key={key}"

    def request_headers(self) -> dict:
        return {"Content-Type": "application/json"}

    def build_body(self, request, stream: bool) -> dict:
        contents = []
        for turn in request.history:
            if turn.role == "system":
                continue
            role = "model" if turn.role == "assistant" else "user"
            contents.append({"role": role, "parts": [{"text": turn.content}]})

        parts = [{"text": request.prompt}] if request.prompt else []
        if request.image_base64:
            parts.append({"inlineData": {"mimeType": "image/jpeg", "data": request.image_base64}})
        elif request.image_url:
            parts.append({"text": f"Analyze this receipt image: {request.image_url}"})
        contents.append({"role": "user", "parts": parts})

        body = {
            "contents": contents,
            "generationConfig": {
                "maxOutputTokens": request.max_tokens,
                "temperature": request.temperature,
            },
        }
        if request.json_mode:
            body["generationConfig"]["responseMimeType"] = "application/json"
        if request.system_prompt:
            body["systemInstruction"] = {"parts": [{"text": request.system_prompt}]}
        return body

    @staticmethod
    def _candidate_text(payload: dict) -> str:
        candidates = payload.get("candidates") or []
        if not candidates:
            return ""
        parts = ((candidates[0] or {}).get("content") or {}).get("parts") or []
        return "".join(p.get("text", "") for p in parts if isinstance(p, dict))

    def extract_text(self, payload: dict) -> str:
        return self._candidate_text(payload)

    def extract_stream_delta(self, frame: dict) -> str:
        return self._candidate_text(frame)


# ══════════════════════════════════════════════════════════════════
#  Amazon Bedrock (Anthropic messages API)
# ══════════════════════════════════════════════════════════════════

class BedrockProvider(ProviderClient):
    provider_id = "bedrock"

    def __init__(self, model_id=None, enabled=None, client=None):
        self.model_id = model_id or config.BEDROCK_MODEL_ID
        self.enabled = config.BEDROCK_ENABLED if enabled is None else enabled
        self._client = client

    def is_configured(self) -> bool:
        return bool(self.enabled and self.model_id)

    def client(self):
        if self._client is None:
            self._client = get_aws_client("bedrock-runtime")
        return self._client

    def _payload(self, request) -> dict:
        if request.image_url and not request.image_base64:
            raise ProviderCallError(self.provider_id, "image URLs are not supported, send base64")
        messages = [turn.as_message() for turn in request.history if turn.role != "system"]
        if request.image_base64:
            content = [
                {"type": "image", "source": {"type": "base64", "media_type": "image/jpeg", "data": request.image_base64}},
                {"type": "text", "text": request.prompt},
            ]
        else:
            content = request.prompt
        messages.append({"role": "user", "content": content})
        payload = {
            "anthropic_version": "bedrock-2023-05-31",
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            "messages": messages,
        }
        if request.system_prompt:
            payload["system"] = request.system_prompt
        return payload

    @staticmethod
    def _status(exc) -> int | None:
        if isinstance(exc, ClientError):
            return exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        return None

    def complete(self, request) -> str:
        payload = self._payload(request)
        start = time.time()
        try:
            resp = self.client().invoke_model(modelId=self.model_id, body=json.dumps(payload))
            resp_body = json.loads(resp["body"].read())
        except (BotoCoreError, ClientError) as exc:
            raise ProviderCallError(self.provider_id, f"invoke_model failed: {exc}", status=self._status(exc)) from exc
        usage = resp_body.get("usage", {})
        emit_provider_metrics(
            self.provider_id, request.task.value, "completed", int((time.time() - start) * 1000),
            usage.get("input_tokens", 0), usage.get("output_tokens", 0),
        )
        content_block = resp_body.get("content", [])
        text = ""
        if content_block and isinstance(content_block, list):
            text = content_block[0].get("text", "")
        if not text.strip():
            raise ProviderCallError(self.provider_id, "empty content in response")
        return text

    def open_stream(self, request) -> ProviderStream:
        payload = self._payload(request)
        try:
            resp = self.client().invoke_model_with_response_stream(
                modelId=self.model_id, body=json.dumps(payload),
            )
        except (BotoCoreError, ClientError) as exc:
            raise ProviderCallError(
                self.provider_id, f"invoke_model_with_response_stream failed: {exc}", status=self._status(exc),
            ) from exc
        event_stream = resp.get("body")
        if event_stream is None:
            raise ProviderCallError(self.provider_id, "stream response has no body")

        def frames():
            for event in event_stream:
                chunk = (event.get("chunk") or {}).get("bytes")
                if chunk:
                    yield b"data: " + chunk + b"\n\n"
            yield b"data: [DONE]\n\n"

        close = getattr(event_stream, "close", None) or (lambda: None)
        return ProviderStream(self.provider_id, frames(), self.extract_stream_delta, close)

    def extract_stream_delta(self, frame: dict) -> str:
        if frame.get("type") != "content_block_delta":
            return ""
        return (frame.get("delta") or {}).get("text") or ""


# ══════════════════════════════════════════════════════════════════
#  Task → provider chain
# ══════════════════════════════════════════════════════════════════

PROVIDER_FACTORIES = {
    "openai": OpenAIProvider,
    "deepseek": DeepSeekProvider,
    "gemini": GeminiProvider,
    "bedrock": BedrockProvider,
}

_TASK_CHAIN_SETTINGS = {
    TaskKind.EXTRACT_RECEIPT: "RECEIPT_PROVIDERS",
    TaskKind.EXTRACT_VOICE: "VOICE_PROVIDERS",
    TaskKind.CATEGORIZE: "CATEGORIZE_PROVIDERS",
    TaskKind.CHAT_TURN: "CHAT_PROVIDERS",
}


def build_chain(task: TaskKind, names=None) -> tuple:
    """Resolves the configured provider names for a task into client instances."""
    if names is None:
        names = getattr(config, _TASK_CHAIN_SETTINGS[task])
    chain = []
    for name in names:
        factory = PROVIDER_FACTORIES.get(name)
        if factory is None:
            raise ConfigurationError(f"Unknown provider '{name}' configured for {task.value}")
        chain.append(factory())
    return tuple(chain)
