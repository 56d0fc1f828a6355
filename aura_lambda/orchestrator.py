"""
orchestrator.py — Provider fallback
====================================
Walks the ordered provider chain of an InferenceRequest:
  1) unconfigured providers are recorded and skipped
  2) each configured provider is called once; any exception is caught at
     the call boundary, recorded, and the next provider is tried
  3) the first Success or MalformedOutput ends the walk
  4) if every provider failed, the last failure is returned

Results are values, never raised. Only a chain that cannot be attempted at
all (empty, or nothing configured) raises ConfigurationError, before any
network call. One ordered pass, no provider tried twice, no backoff.

Every attempt is logged with step="provider_attempt". CloudWatch metrics and
Langfuse generations are side channels; their failures never change the
outcome.
"""

import itertools
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Iterator, Optional, Tuple

from config import get_langfuse, log_ctx, logger
from errors import ConfigurationError, ProviderCallError
from helpers import emit_provider_metrics
from inference import AttemptRecord, ProviderError, Success
from normalizer import normalize_response


@dataclass(frozen=True)
class StreamSession:
    provider_id: str
    used_fallback: bool
    attempts: Tuple[AttemptRecord, ...]
    chunks: Iterator[bytes]
    extract_delta: Callable[[dict], str]
    close: Callable[[], None]


class FallbackOrchestrator:
    def __init__(self, user_id: Optional[str] = None):
        self.user_id = user_id

    # ── Diagnostics ───────────────────────────────────────────────

    def _record(self, request, attempts, provider_id, outcome, detail="", elapsed_ms=0):
        attempts.append(AttemptRecord(provider_id, outcome, detail[:300], elapsed_ms))
        log = logger.info if outcome in ("success", "malformed") else logger.warning
        log(
            f"Provider attempt {outcome}: {provider_id}",
            extra=log_ctx(
                module_name="orchestrator", user_id=self.user_id or "-",
                task=request.task.value, step="provider_attempt",
                provider_id=provider_id, outcome=outcome, elapsed_ms=elapsed_ms,
                detail=detail[:300],
            ),
        )
        if outcome != "unconfigured":
            emit_provider_metrics(provider_id, request.task.value, outcome, elapsed_ms)

    def _start_generation(self, request, provider_id):
        lf = get_langfuse()
        if not lf:
            return None
        try:
            trace = lf.trace(name=f"aura-{request.task.value}", user_id=str(self.user_id or "anonymous"))
            return trace.generation(
                name=provider_id,
                input={"system": request.system_prompt[:2000], "prompt": request.prompt[:2000]},
                metadata={"has_image": request.has_image, "json_mode": request.json_mode},
            )
        except Exception:
            logger.warning("Langfuse trace start failed", extra=log_ctx(module_name="orchestrator"), exc_info=True)
            return None

    def _end_generation(self, generation, output=None, error=None):
        if generation is None:
            return
        try:
            if error is not None:
                generation.end(level="ERROR", status_message=str(error)[:500])
            else:
                generation.end(output=output)
            get_langfuse().flush()
        except Exception:
            logger.warning("Langfuse trace end failed", extra=log_ctx(module_name="orchestrator"), exc_info=True)

    # ── Chain walk ────────────────────────────────────────────────

    @staticmethod
    def _check_chain(request):
        if not request.providers:
            raise ConfigurationError(f"No providers configured for {request.task.value}")
        if not any(p.is_configured() for p in request.providers):
            raise ConfigurationError(f"No provider credentials configured for {request.task.value}")

    @staticmethod
    def _elapsed(start):
        return int((time.monotonic() - start) * 1000)

    def run(self, request):
        """Synchronous request. Returns Success | MalformedOutput | ProviderError."""
        self._check_chain(request)
        attempts: list = []
        failure: Tuple[str, str, Any] = ("", "", None)

        for provider in request.providers:
            pid = provider.provider_id
            if not provider.is_configured():
                self._record(request, attempts, pid, "unconfigured", "missing credentials")
                continue

            start = time.monotonic()
            generation = self._start_generation(request, pid)
            try:
                raw = provider.complete(request)
            except ProviderCallError as exc:
                self._record(request, attempts, pid, "error", exc.message, self._elapsed(start))
                self._end_generation(generation, error=exc)
                failure = (pid, exc.message, exc.status)
                continue
            except Exception as exc:
                logger.error(
                    f"Unexpected provider failure: {pid}",
                    extra=log_ctx(module_name="orchestrator", provider_id=pid),
                    exc_info=True,
                )
                self._record(request, attempts, pid, "error", str(exc), self._elapsed(start))
                self._end_generation(generation, error=exc)
                failure = (pid, str(exc), None)
                continue

            result = normalize_response(raw, pid)
            outcome = "success" if isinstance(result, Success) else "malformed"
            self._record(request, attempts, pid, outcome, "", self._elapsed(start))
            self._end_generation(generation, output=raw)
            return replace(result, attempts=tuple(attempts))

        pid, message, status = failure
        return ProviderError(provider_id=pid, raw_message=message, status=status, attempts=tuple(attempts))

    def open_stream(self, request):
        """
        Streaming request. A stream counts as open once its first chunk has
        been read; failure or a stall before that advances to the next
        provider. Returns StreamSession | ProviderError.
        """
        self._check_chain(request)
        attempts: list = []
        failure: Tuple[str, str, Any] = ("", "", None)

        for index, provider in enumerate(request.providers):
            pid = provider.provider_id
            if not provider.is_configured():
                self._record(request, attempts, pid, "unconfigured", "missing credentials")
                continue

            start = time.monotonic()
            stream = None
            try:
                stream = provider.open_stream(request)
                first = next(stream.chunks)
            except StopIteration:
                stream.close()
                self._record(request, attempts, pid, "error", "stream ended before first chunk", self._elapsed(start))
                failure = (pid, "stream ended before first chunk", None)
                continue
            except ProviderCallError as exc:
                if stream is not None:
                    stream.close()
                self._record(request, attempts, pid, "error", exc.message, self._elapsed(start))
                failure = (pid, exc.message, exc.status)
                continue
            except Exception as exc:
                if stream is not None:
                    stream.close()
                self._record(request, attempts, pid, "error", f"stream open failed: {exc}", self._elapsed(start))
                failure = (pid, str(exc), None)
                continue

            self._record(request, attempts, pid, "success", "stream opened", self._elapsed(start))
            return StreamSession(
                provider_id=pid,
                used_fallback=index > 0,
                attempts=tuple(attempts),
                chunks=itertools.chain([first], stream.chunks),
                extract_delta=stream.extract_delta,
                close=stream.close,
            )

        pid, message, status = failure
        return ProviderError(provider_id=pid, raw_message=message, status=status, attempts=tuple(attempts))
