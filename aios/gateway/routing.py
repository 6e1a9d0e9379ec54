"""Routing Table: logical engine categories to concrete (provider, model) pairs."""

from __future__ import annotations

from collections.abc import Container
from dataclasses import dataclass, field

from aios.gateway.types import EngineCategory, Route

DEFAULT_PROVIDER_ID = "gemini"
DEFAULT_FALLBACK_ORDER = ["gemini", "groq", "openai", "deepseek"]


def default_mapping() -> dict[str, Route]:
    return {category.value: Route("gemini", "gemini-2.0-flash") for category in EngineCategory}


@dataclass
class RoutingTable:
    canonical_mapping: dict[str, Route] = field(default_factory=default_mapping)
    default_provider_id: str = DEFAULT_PROVIDER_ID
    fallback_order: list[str] = field(default_factory=lambda: list(DEFAULT_FALLBACK_ORDER))

    def resolve(self, model_preference: str | None, known_providers: Container[str]) -> tuple[str | None, str | None]:
        """Resolve a task's preference to ``(provider_id, model_id)``.

        A category resolves to its route, a provider id to that provider with
        no model, anything else to ``(None, None)``. Never raises.
        """
        if not model_preference:
            return None, None
        route = self.canonical_mapping.get(model_preference)
        if route is not None:
            return route.provider_id, route.model_id
        if model_preference in known_providers:
            return model_preference, None
        return None, None

    def plan(self, target_provider_id: str) -> list[str]:
        """Target first, then fallbacks, each provider at most once."""
        return list(dict.fromkeys([target_provider_id, *self.fallback_order]))

    def copy(self) -> RoutingTable:
        return RoutingTable(
            canonical_mapping=dict(self.canonical_mapping),
            default_provider_id=self.default_provider_id,
            fallback_order=list(self.fallback_order),
        )

    def to_dict(self) -> dict:
        return {
            "canonical_mapping": {
                name: {"provider_id": r.provider_id, "model_id": r.model_id}
                for name, r in self.canonical_mapping.items()
            },
            "default_provider_id": self.default_provider_id,
            "fallback_order": list(self.fallback_order),
        }
