"""Core types and DTOs for the AI provider routing layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from aios.gateway.credentials import CredentialPool


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class TaskType(str, Enum):
    """Kind of output a task asks for."""

    TEXT = "TEXT"
    JSON = "JSON"
    IMAGE_TO_TEXT = "IMAGE_TO_TEXT"


class EngineCategory(str, Enum):
    """Logical engines shipped in the default routing table."""

    NOTES = "NOTES_ENGINE"
    MCQ = "MCQ_ENGINE"
    CHAT = "CHAT_ENGINE"


class AttemptOutcome(str, Enum):
    """What happened to one provider in a dispatch plan."""

    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


# ---------------------------------------------------------------------------
# Task: input to the dispatcher
# ---------------------------------------------------------------------------


@dataclass
class Task:
    """A single content-generation request.

    ``model_preference`` is either a logical engine category
    (``"NOTES_ENGINE"``), a literal provider id (``"groq"``), or a concrete
    model id once the dispatcher has resolved it for the target provider.
    """

    prompt: str
    type: TaskType = TaskType.TEXT
    system_instruction: str | None = None
    temperature: float | None = None
    model_preference: str | None = None
    json_schema: dict[str, Any] | None = None
    image_url: str | None = None


# ---------------------------------------------------------------------------
# Response: unified DTO (output of any adapter)
# ---------------------------------------------------------------------------


@dataclass
class AttemptRecord:
    """One entry of the dispatch attempt log."""

    provider: str
    outcome: AttemptOutcome
    error: str = ""
    error_type: str = ""

    def to_dict(self) -> dict:
        return {
            "provider": self.provider,
            "outcome": self.outcome.value,
            "error": self.error,
            "error_type": self.error_type,
        }


@dataclass
class Response:
    """Normalized generation result, same shape regardless of vendor."""

    text: str
    model_used: str
    provider_used: str

    input_tokens: int | None = None
    output_tokens: int | None = None
    total_tokens: int | None = None
    cost: float | None = None
    latency_ms: int = 0

    # Providers that failed before this one succeeded
    failed_attempts: list[AttemptRecord] = field(default_factory=list)

    # Vendor payload, opaque
    raw: Any = None

    def to_dict(self) -> dict:
        """Serialize to a JSON-compatible dict (raw payload included)."""
        return {
            "text": self.text,
            "model_used": self.model_used,
            "provider_used": self.provider_used,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
            "cost": self.cost,
            "latency_ms": self.latency_ms,
            "failed_attempts": [a.to_dict() for a in self.failed_attempts],
            "raw": self.raw,
        }


# ---------------------------------------------------------------------------
# Provider configuration
# ---------------------------------------------------------------------------


@dataclass
class Credential:
    """An API key with its health counters.

    ``is_active`` is operator-controlled; ``is_exhausted`` is set
    automatically after an auth failure or too many errors.
    """

    key: str
    is_active: bool = True
    is_exhausted: bool = False
    usage_count: int = 0
    error_count: int = 0
    last_used_at: datetime | None = None
    label: str | None = None

    @property
    def is_usable(self) -> bool:
        return self.is_active and not self.is_exhausted


@dataclass
class ModelInfo:
    """A model offered by a provider."""

    id: str
    name: str = ""
    enabled: bool = True
    cost_per_1k_tokens: float | None = None
    context_window: int | None = None
    is_image_capable: bool = False


@dataclass
class ProviderConfig:
    """Configuration of one provider. ``id`` is the routing key."""

    id: str
    name: str
    credentials: CredentialPool
    enabled: bool = True
    models: list[ModelInfo] = field(default_factory=list)
    base_url: str | None = None
    icon: str | None = None

    def get_model(self, model_id: str) -> ModelInfo | None:
        for model in self.models:
            if model.id == model_id:
                return model
        return None

    def first_enabled_model(self) -> str | None:
        for model in self.models:
            if model.enabled:
                return model.id
        return None


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Route:
    """Concrete assignment of a logical engine."""

    provider_id: str
    model_id: str
