"""Request/response schemas for the AI routing API."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from aios.core.logging import mask_key
from aios.gateway.types import Credential, ModelInfo, ProviderConfig, Response, Route, Task, TaskType


# --- Generation ---


class TaskRequest(BaseModel):
    prompt: str = Field(..., min_length=1)
    type: TaskType = TaskType.TEXT
    system_instruction: str | None = None
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    model_preference: str | None = None  # engine category, provider id, or nothing
    json_schema: dict[str, Any] | None = None
    image_url: str | None = None

    def to_task(self) -> Task:
        return Task(
            prompt=self.prompt,
            type=self.type,
            system_instruction=self.system_instruction,
            temperature=self.temperature,
            model_preference=self.model_preference,
            json_schema=self.json_schema,
            image_url=self.image_url,
        )


class AttemptOut(BaseModel):
    provider: str
    outcome: str
    error: str = ""
    error_type: str = ""


class GenerationResponse(BaseModel):
    text: str
    model_used: str
    provider_used: str
    input_tokens: int | None = None
    output_tokens: int | None = None
    total_tokens: int | None = None
    cost: float | None = None
    latency_ms: int = 0
    failed_attempts: list[AttemptOut] = []
    raw: Any = None

    @classmethod
    def from_response(cls, response: Response, include_raw: bool = False) -> "GenerationResponse":
        data = response.to_dict()
        if not include_raw:
            data["raw"] = None
        return cls.model_validate(data)


class DispatchFailureResponse(BaseModel):
    detail: str
    attempts: list[AttemptOut]


# --- Providers ---


class ModelSchema(BaseModel):
    id: str = Field(..., min_length=1)
    name: str = ""
    enabled: bool = True
    cost_per_1k_tokens: float | None = Field(default=None, ge=0)
    context_window: int | None = Field(default=None, gt=0)
    is_image_capable: bool = False

    @classmethod
    def from_model(cls, model: ModelInfo) -> "ModelSchema":
        return cls(
            id=model.id,
            name=model.name,
            enabled=model.enabled,
            cost_per_1k_tokens=model.cost_per_1k_tokens,
            context_window=model.context_window,
            is_image_capable=model.is_image_capable,
        )

    def to_model(self) -> ModelInfo:
        return ModelInfo(
            id=self.id,
            name=self.name or self.id,
            enabled=self.enabled,
            cost_per_1k_tokens=self.cost_per_1k_tokens,
            context_window=self.context_window,
            is_image_capable=self.is_image_capable,
        )


class CredentialOut(BaseModel):
    key: str  # masked as "...abcd"
    label: str | None
    is_active: bool
    is_exhausted: bool
    usage_count: int
    error_count: int
    last_used_at: datetime | None

    @classmethod
    def from_credential(cls, cred: Credential) -> "CredentialOut":
        return cls(
            key=mask_key(cred.key),
            label=cred.label,
            is_active=cred.is_active,
            is_exhausted=cred.is_exhausted,
            usage_count=cred.usage_count,
            error_count=cred.error_count,
            last_used_at=cred.last_used_at,
        )


class ProviderOut(BaseModel):
    id: str
    name: str
    enabled: bool
    base_url: str | None
    icon: str | None
    models: list[ModelSchema]
    api_keys: list[CredentialOut]

    @classmethod
    def from_config(cls, config: ProviderConfig) -> "ProviderOut":
        return cls(
            id=config.id,
            name=config.name,
            enabled=config.enabled,
            base_url=config.base_url,
            icon=config.icon,
            models=[ModelSchema.from_model(m) for m in config.models],
            api_keys=[CredentialOut.from_credential(c) for c in config.credentials],
        )


class ProviderUpdate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    enabled: bool = True
    base_url: str | None = None
    icon: str | None = None
    models: list[ModelSchema] = []


class KeyCreate(BaseModel):
    key: str = Field(..., min_length=1)
    label: str | None = Field(default=None, max_length=100)


class KeyUpdate(BaseModel):
    is_active: bool


class ConnectionCheckResponse(BaseModel):
    provider_id: str
    ok: bool


# --- Routing ---


class RouteSchema(BaseModel):
    provider_id: str
    model_id: str


class RoutingTableSchema(BaseModel):
    canonical_mapping: dict[str, RouteSchema]
    default_provider_id: str
    fallback_order: list[str]

    def routes(self) -> dict[str, Route]:
        return {name: Route(r.provider_id, r.model_id) for name, r in self.canonical_mapping.items()}
