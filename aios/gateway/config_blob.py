"""Settings blob codec: providers and routing table to and from JSON.

The blob is shared with the rest of the application, so only the ``ai*``
keys are owned here and every other key is preserved on save. Field names
are camelCase on the wire.

Two shapes are accepted on load:
  - current: ``aiProviders`` list + ``aiCanonicalMapping`` (+ default/fallbacks)
  - legacy: no provider structure, optional flat ``apiKeys`` list of strings,
    which are attached to the default provider of the built-in set
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from aios.core.encryption import open_secret, seal_secret
from aios.gateway.credentials import CredentialPool
from aios.gateway.errors import CredentialRejected
from aios.gateway.routing import DEFAULT_PROVIDER_ID, RoutingTable
from aios.gateway.types import Credential, ModelInfo, ProviderConfig, Route

logger = logging.getLogger(__name__)

PROVIDERS_KEY = "aiProviders"
MAPPING_KEY = "aiCanonicalMapping"
DEFAULT_PROVIDER_KEY = "aiDefaultProviderId"
FALLBACK_KEY = "aiFallbackOrder"
LEGACY_KEYS_KEY = "apiKeys"


# ---------------------------------------------------------------------------
# Wire schemas
# ---------------------------------------------------------------------------


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class StoredCredential(_CamelModel):
    key: str
    is_active: bool = True
    usage_count: int = 0
    error_count: int = 0
    last_used: datetime | None = None
    is_exhausted: bool = False
    label: str | None = None


class StoredModel(_CamelModel):
    id: str
    name: str = ""
    provider_id: str | None = None
    cost_per_1k_tokens: float | None = Field(default=None, alias="costPer1kToken")
    context_window: int | None = None
    enabled: bool = True
    is_image_capable: bool = False


class StoredProvider(_CamelModel):
    id: str
    name: str = ""
    enabled: bool = True
    base_url: str | None = None
    models: list[StoredModel] = Field(default_factory=list)
    api_keys: list[StoredCredential] = Field(default_factory=list)
    icon: str | None = None


class StoredRoute(_CamelModel):
    provider_id: str
    model_id: str


# ---------------------------------------------------------------------------
# Built-in provider set
# ---------------------------------------------------------------------------

_DEFAULT_PROVIDERS: list[dict[str, Any]] = [
    {
        "id": "gemini",
        "name": "Gemini",
        "models": [("gemini-2.0-flash", "Flash 2.0"), ("gemini-2.5-flash", "Flash 2.5")],
    },
    {
        "id": "groq",
        "name": "Groq",
        "models": [("llama-3.3-70b-versatile", "Llama 3.3 70B"), ("llama-3.1-8b-instant", "Llama 3.1 8B")],
    },
    {
        "id": "openai",
        "name": "OpenAI",
        "models": [("gpt-4o", "GPT-4o"), ("gpt-4o-mini", "GPT-4o Mini")],
    },
    {
        "id": "deepseek",
        "name": "DeepSeek",
        "models": [("deepseek-chat", "DeepSeek V3")],
    },
]


def default_providers(legacy_keys: list[str] | None = None) -> list[ProviderConfig]:
    """Built-in provider set; legacy keys go to the default provider."""
    providers = []
    for entry in _DEFAULT_PROVIDERS:
        providers.append(
            ProviderConfig(
                id=entry["id"],
                name=entry["name"],
                credentials=CredentialPool(entry["id"]),
                models=[ModelInfo(id=model_id, name=name) for model_id, name in entry["models"]],
            )
        )

    for key in legacy_keys or []:
        pool = providers[0].credentials
        try:
            pool.add(str(key))
        except CredentialRejected as e:
            logger.warning("Skipping legacy key: %s", e)

    return providers


# ---------------------------------------------------------------------------
# Conversion
# ---------------------------------------------------------------------------


def _provider_from_stored(stored: StoredProvider) -> ProviderConfig:
    credentials = []
    for c in stored.api_keys:
        key = open_secret(c.key)
        if not key:
            logger.warning("Dropping unreadable key for provider %s", stored.id)
            continue
        credentials.append(
            Credential(
                key=key,
                is_active=c.is_active,
                is_exhausted=c.is_exhausted,
                usage_count=c.usage_count,
                error_count=c.error_count,
                last_used_at=c.last_used,
                label=c.label,
            )
        )
    return ProviderConfig(
        id=stored.id,
        name=stored.name or stored.id,
        enabled=stored.enabled,
        base_url=stored.base_url,
        icon=stored.icon,
        credentials=CredentialPool(stored.id, credentials),
        models=[
            ModelInfo(
                id=m.id,
                name=m.name or m.id,
                enabled=m.enabled,
                cost_per_1k_tokens=m.cost_per_1k_tokens,
                context_window=m.context_window,
                is_image_capable=m.is_image_capable,
            )
            for m in stored.models
        ],
    )


def _provider_to_stored(config: ProviderConfig) -> StoredProvider:
    return StoredProvider(
        id=config.id,
        name=config.name,
        enabled=config.enabled,
        base_url=config.base_url,
        icon=config.icon,
        models=[
            StoredModel(
                id=m.id,
                name=m.name,
                provider_id=config.id,
                cost_per_1k_tokens=m.cost_per_1k_tokens,
                context_window=m.context_window,
                enabled=m.enabled,
                is_image_capable=m.is_image_capable,
            )
            for m in config.models
        ],
        api_keys=[
            StoredCredential(
                key=seal_secret(c.key),
                is_active=c.is_active,
                usage_count=c.usage_count,
                error_count=c.error_count,
                last_used=c.last_used_at,
                is_exhausted=c.is_exhausted,
                label=c.label,
            )
            for c in config.credentials
        ],
    )


def _parse_providers(raw_providers: list) -> list[ProviderConfig]:
    providers = []
    for index, raw in enumerate(raw_providers):
        try:
            stored = StoredProvider.model_validate(raw)
        except ValidationError as e:
            logger.error("Skipping provider entry %d: %s", index, e)
            continue
        providers.append(_provider_from_stored(stored))
    if raw_providers and not providers:
        logger.error("No readable provider entries; using the built-in set")
        return default_providers()
    return providers


def _parse_mapping(raw_mapping: dict) -> dict[str, Route] | None:
    mapping = {}
    for name, value in raw_mapping.items():
        try:
            route = StoredRoute.model_validate(value)
        except ValidationError as e:
            logger.error("Skipping route %s: %s", name, e)
            continue
        mapping[name] = Route(route.provider_id, route.model_id)
    if raw_mapping and not mapping:
        return None
    return mapping


def parse_blob(blob: dict[str, Any]) -> tuple[list[ProviderConfig], RoutingTable]:
    """Decode a settings blob.

    Unreadable provider entries and routes are logged and skipped; the rest
    of the configuration is kept.
    """
    raw_providers = blob.get(PROVIDERS_KEY)
    if isinstance(raw_providers, list):
        providers = _parse_providers(raw_providers)
    else:
        legacy = blob.get(LEGACY_KEYS_KEY) or []
        if not isinstance(legacy, list):
            legacy = []
        if legacy:
            logger.info("Legacy settings shape found; attaching %d key(s) to %s", len(legacy), DEFAULT_PROVIDER_ID)
        providers = default_providers(legacy)

    routing = RoutingTable()
    raw_mapping = blob.get(MAPPING_KEY)
    if isinstance(raw_mapping, dict):
        mapping = _parse_mapping(raw_mapping)
        if mapping is not None:
            routing.canonical_mapping = mapping
    if isinstance(blob.get(DEFAULT_PROVIDER_KEY), str) and blob[DEFAULT_PROVIDER_KEY]:
        routing.default_provider_id = blob[DEFAULT_PROVIDER_KEY]
    if isinstance(blob.get(FALLBACK_KEY), list):
        routing.fallback_order = [str(p) for p in blob[FALLBACK_KEY]]

    return providers, routing


def load_blob(blob: Any) -> tuple[list[ProviderConfig], RoutingTable]:
    """Decode a blob, degrading to the built-in configuration on any error."""
    if not blob:
        return default_providers(), RoutingTable()
    if not isinstance(blob, dict):
        logger.error("Settings blob is not an object (%s); using defaults", type(blob).__name__)
        return default_providers(), RoutingTable()
    try:
        return parse_blob(blob)
    except (ValidationError, TypeError, ValueError) as e:
        logger.error("Failed to parse AI settings; using defaults: %s", e)
        return default_providers(), RoutingTable()


def dump_blob(
    providers: list[ProviderConfig],
    routing: RoutingTable,
    existing: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Merge providers and routing into ``existing`` (left untouched) and return the result."""
    blob = dict(existing or {})
    blob[PROVIDERS_KEY] = [_provider_to_stored(p).model_dump(mode="json", by_alias=True) for p in providers]
    blob[MAPPING_KEY] = {
        name: StoredRoute(provider_id=r.provider_id, model_id=r.model_id).model_dump(by_alias=True)
        for name, r in routing.canonical_mapping.items()
    }
    blob[DEFAULT_PROVIDER_KEY] = routing.default_provider_id
    blob[FALLBACK_KEY] = list(routing.fallback_order)
    return blob
