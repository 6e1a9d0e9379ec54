"""Dispatcher: single entry point for content generation.

For every ``execute`` call:
  1. Snapshots the provider registry and routing table
  2. Resolves the task's model preference to (provider, model)
  3. Builds the plan: target provider, then the fallback order, deduplicated
  4. Tries each provider in order, skipping unknown/disabled providers and
     providers without a usable credential
  5. Returns the first success, or raises AggregateDispatchFailure

Usage:
    dispatcher = Dispatcher(store=JsonFileConfigStore("settings.json"))
    await dispatcher.reload()

    response = await dispatcher.execute(Task(prompt="...", model_preference="NOTES_ENGINE"))
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Mapping

from aios.core.metrics import DISPATCH_ATTEMPTS, DISPATCH_FAILURES, PROVIDER_LATENCY
from aios.gateway.config_blob import default_providers, dump_blob, load_blob
from aios.gateway.config_store import ConfigStore, InMemoryConfigStore
from aios.gateway.credentials import CredentialPool
from aios.gateway.errors import AggregateDispatchFailure, UnknownProvider
from aios.gateway.routing import RoutingTable
from aios.gateway.types import AttemptOutcome, AttemptRecord, Credential, ProviderConfig, Response, Route, Task
from aios.gateway.vendor_adapters import BaseProviderAdapter, get_adapter

logger = logging.getLogger(__name__)


class Dispatcher:
    """Provider registry plus routing and failover.

    Constructed explicitly and handed to consumers; there is no global
    instance.
    """

    def __init__(
        self,
        store: ConfigStore | None = None,
        providers: list[ProviderConfig] | None = None,
        routing: RoutingTable | None = None,
        timeout: float = 60.0,
    ):
        self.store = store or InMemoryConfigStore()
        self.timeout = timeout
        self._adapters: dict[str, BaseProviderAdapter] = {}
        self._routing = routing or RoutingTable()
        for config in providers if providers is not None else default_providers():
            self._register(config)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def execute(self, task: Task) -> Response:
        """Run a task on the first provider in the plan that succeeds."""
        adapters = dict(self._adapters)
        routing = self._routing

        target_provider_id, target_model_id = routing.resolve(task.model_preference, adapters)
        if target_provider_id is None:
            target_provider_id = routing.default_provider_id

        attempts: list[AttemptRecord] = []

        for provider_id in routing.plan(target_provider_id):
            adapter = adapters.get(provider_id)
            skip_reason = ""
            if adapter is None:
                skip_reason = "unknown provider"
            elif not adapter.config.enabled:
                skip_reason = "provider disabled"
            elif not adapter.credentials.has_usable():
                skip_reason = "no usable credentials"

            if skip_reason:
                logger.debug("Skipping %s: %s", provider_id, skip_reason)
                DISPATCH_ATTEMPTS.labels(provider=provider_id, outcome=AttemptOutcome.SKIPPED.value).inc()
                attempts.append(
                    AttemptRecord(
                        provider=provider_id,
                        outcome=AttemptOutcome.SKIPPED,
                        error=skip_reason,
                        error_type="Skipped",
                    )
                )
                continue

            # Fallbacks use their own default model
            model = target_model_id if provider_id == target_provider_id else None
            provider_task = dataclasses.replace(task, model_preference=model)

            logger.info(
                "Executing on %s (model: %s)",
                provider_id,
                model or "auto",
                extra={"provider_id": provider_id, "model_id": model},
            )
            try:
                response = await adapter.generate_content(provider_task)
            except Exception as e:
                logger.warning("%s failed: %s", provider_id, e)
                DISPATCH_ATTEMPTS.labels(provider=provider_id, outcome=AttemptOutcome.FAILED.value).inc()
                attempts.append(
                    AttemptRecord(
                        provider=provider_id,
                        outcome=AttemptOutcome.FAILED,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                )
                continue

            DISPATCH_ATTEMPTS.labels(provider=provider_id, outcome=AttemptOutcome.SUCCESS.value).inc()
            PROVIDER_LATENCY.labels(provider=provider_id).observe(response.latency_ms / 1000)
            response.failed_attempts = [a for a in attempts if a.outcome == AttemptOutcome.FAILED]
            return response

        DISPATCH_FAILURES.inc()
        failure = AggregateDispatchFailure(attempts)
        logger.error("Dispatch failed: %s", failure)
        raise failure

    async def test_connection(self, provider_id: str) -> bool:
        adapter = self._adapters.get(provider_id)
        if adapter is None:
            raise UnknownProvider(provider_id)
        return await adapter.test_connection()

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def _register(self, config: ProviderConfig) -> None:
        self._adapters[config.id] = get_adapter(config, timeout=self.timeout)

    def get_providers(self) -> list[ProviderConfig]:
        return [adapter.config for adapter in self._adapters.values()]

    def get_provider(self, provider_id: str) -> ProviderConfig:
        adapter = self._adapters.get(provider_id)
        if adapter is None:
            raise UnknownProvider(provider_id)
        return adapter.config

    def get_routing_table(self) -> RoutingTable:
        return self._routing.copy()

    def update_provider(self, config: ProviderConfig) -> None:
        """Register a new provider or replace an existing one.

        In-flight dispatches keep the adapter they started with.
        """
        self._register(config)
        logger.info("Provider %s updated (%d key(s))", config.id, len(config.credentials))

    def update_routing_table(
        self,
        mapping: Mapping[str, Route],
        default_provider_id: str | None = None,
        fallback_order: list[str] | None = None,
    ) -> None:
        routing = self._routing.copy()
        routing.canonical_mapping = dict(mapping)
        if default_provider_id is not None:
            routing.default_provider_id = default_provider_id
        if fallback_order is not None:
            routing.fallback_order = list(fallback_order)
        self._routing = routing
        logger.info("Routing table updated (%d categories)", len(routing.canonical_mapping))

    # ------------------------------------------------------------------
    # Credential administration
    # ------------------------------------------------------------------

    def _pool(self, provider_id: str) -> CredentialPool:
        return self.get_provider(provider_id).credentials

    def add_key(self, provider_id: str, key: str, label: str | None = None) -> Credential:
        return self._pool(provider_id).add(key, label=label)

    def remove_key(self, provider_id: str, key: str) -> bool:
        return self._pool(provider_id).remove(key)

    def set_key_active(self, provider_id: str, key: str, active: bool) -> bool:
        return self._pool(provider_id).set_active(key, active)

    def reset_key(self, provider_id: str, key: str) -> bool:
        return self._pool(provider_id).reset(key)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def reload(self) -> None:
        """Replace in-memory configuration with the persisted one.

        Parse errors degrade to the built-in configuration.
        """
        try:
            blob = await self.store.load()
        except ValueError as e:
            logger.error("Stored AI settings are unreadable; using defaults: %s", e)
            blob = None
        providers, routing = load_blob(blob)

        adapters: dict[str, BaseProviderAdapter] = {}
        for config in providers:
            try:
                adapters[config.id] = get_adapter(config, timeout=self.timeout)
            except UnknownProvider:
                logger.warning("Ignoring provider %s: no adapter and no base URL", config.id)

        self._adapters = adapters
        self._routing = routing
        logger.info("Loaded %d provider(s); default=%s", len(adapters), routing.default_provider_id)

    async def save(self) -> None:
        """Write providers and routing table back, keeping unrelated blob keys."""
        try:
            existing = await self.store.load()
        except ValueError as e:
            logger.error("Stored AI settings are unreadable; overwriting them: %s", e)
            existing = None
        blob = dump_blob(self.get_providers(), self._routing, existing if isinstance(existing, dict) else None)
        await self.store.save(blob)
        logger.info("Saved AI settings (%d provider(s))", len(self._adapters))

    def status(self) -> dict:
        return {
            "default_provider_id": self._routing.default_provider_id,
            "fallback_order": list(self._routing.fallback_order),
            "providers": [
                {
                    "id": adapter.id,
                    "enabled": adapter.config.enabled,
                    "default_model": adapter.get_default_model(),
                    "credentials": adapter.credentials.stats(),
                }
                for adapter in self._adapters.values()
            ],
        }
