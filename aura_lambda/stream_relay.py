"""
stream_relay.py — Provider stream → client event stream
========================================================
One consumer loop reads the upstream chunks of a StreamSession:
  - bytes are split into lines; partial lines (and partial UTF-8
    sequences) wait in a pending buffer until their newline arrives
  - only "data:" lines count; "data: [DONE]" ends the stream
  - each text fragment is appended to the reply buffer, then forwarded as a
    Token event

When upstream ends, the full reply goes through the action extractor, the
completion callback persists it, and the relay emits Actions (if any),
Metadata (if a fallback provider served) and a terminal Done.

Closing the event generator early closes the upstream connection.
"""

import json
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Iterator, Optional

from action_extractor import extract_actions
from config import log_ctx, logger
from helpers import sse_frame


@dataclass(frozen=True)
class Token:
    text: str

    def to_frame(self) -> str:
        return sse_frame({"type": "token", "content": self.text})


@dataclass(frozen=True)
class Actions:
    actions: list

    def to_frame(self) -> str:
        return sse_frame({"type": "actions", "actions": self.actions})


@dataclass(frozen=True)
class Metadata:
    used_fallback_provider: bool

    def to_frame(self) -> str:
        return sse_frame({"type": "metadata", "usingFallback": self.used_fallback_provider})


@dataclass(frozen=True)
class Done:
    def to_frame(self) -> str:
        return "data: [DONE]\n\n"


def _data_payload(raw: bytes) -> Optional[str]:
    line = raw.decode("utf-8", errors="replace").rstrip("\r")
    if not line.startswith("data:"):
        return None
    return line[5:].strip()


def iter_sse_data(chunks: Iterable[bytes]) -> Iterator[str]:
    """Yields the payload of every data: line until [DONE] or end of input."""
    pending = b""
    for chunk in chunks:
        pending += chunk
        *lines, pending = pending.split(b"\n")
        for raw in lines:
            payload = _data_payload(raw)
            if not payload:
                continue
            if payload == "[DONE]":
                return
            yield payload
    if pending:
        payload = _data_payload(pending)
        if payload and payload != "[DONE]":
            yield payload


class StreamRelay:
    def __init__(
        self,
        session,
        on_complete: Optional[Callable[[str, list], Any]] = None,
        user_id: Optional[str] = None,
    ):
        self.session = session
        self.on_complete = on_complete
        self.user_id = user_id
        self.full_text = ""

    def _ctx(self, **kwargs):
        return log_ctx(
            module_name="stream_relay", user_id=self.user_id or "-",
            provider_id=self.session.provider_id, **kwargs,
        )

    def events(self):
        buffer = []
        try:
            for payload in iter_sse_data(self.session.chunks):
                try:
                    frame = json.loads(payload)
                except ValueError:
                    continue
                if not isinstance(frame, dict):
                    continue
                fragment = self.session.extract_delta(frame)
                if fragment:
                    buffer.append(fragment)
                    yield Token(fragment)
        except Exception:
            logger.error("Upstream stream failed mid-reply", extra=self._ctx(step="relay"), exc_info=True)
        finally:
            self.session.close()

        self.full_text = "".join(buffer)
        clean_text, actions = extract_actions(self.full_text)

        if self.on_complete is not None:
            try:
                self.on_complete(clean_text, actions)
            except Exception:
                logger.error("Stream completion callback failed", extra=self._ctx(step="persist"), exc_info=True)

        if actions:
            yield Actions(actions)
        if self.session.used_fallback:
            yield Metadata(True)
        yield Done()

    def frames(self):
        """Same events, encoded as SSE frames."""
        events = self.events()
        try:
            for event in events:
                yield event.to_frame()
        finally:
            events.close()
