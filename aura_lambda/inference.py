"""
inference.py — Value types exchanged with the provider orchestration core.

InferenceResult is a tagged union (Success | ProviderError | MalformedOutput);
it is always returned, never raised.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional, Tuple


class TaskKind(str, Enum):
    EXTRACT_RECEIPT = "extract_receipt"
    EXTRACT_VOICE = "extract_voice"
    CATEGORIZE = "categorize"
    CHAT_TURN = "chat_turn"


@dataclass(frozen=True)
class ChatTurn:
    role: str
    content: str

    def as_message(self) -> dict:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class InferenceRequest:
    task: TaskKind
    providers: Tuple[Any, ...]
    prompt: str = ""
    system_prompt: str = ""
    history: Tuple[ChatTurn, ...] = ()
    image_url: Optional[str] = None
    image_base64: Optional[str] = None
    max_tokens: int = 1000
    temperature: float = 0.2
    json_mode: bool = False

    @property
    def has_image(self) -> bool:
        return bool(self.image_url or self.image_base64)


@dataclass(frozen=True)
class AttemptRecord:
    provider_id: str
    outcome: str  # success | malformed | error | unconfigured
    detail: str = ""
    elapsed_ms: int = 0


@dataclass(frozen=True)
class Success:
    structured: Mapping[str, Any]
    provider_id: Optional[str] = None
    attempts: Tuple[AttemptRecord, ...] = ()


@dataclass(frozen=True)
class ProviderError:
    provider_id: str
    raw_message: str
    status: Optional[int] = None
    attempts: Tuple[AttemptRecord, ...] = ()


@dataclass(frozen=True)
class MalformedOutput:
    raw_text: str
    reason: str = "invalid_json"
    provider_id: Optional[str] = None
    attempts: Tuple[AttemptRecord, ...] = field(default=(), compare=False)
