"""Error taxonomy for the routing layer.

Adapters raise ``ProviderError`` subclasses; the dispatcher catches them and
moves to the next provider. Callers of ``Dispatcher.execute`` only ever see
``AggregateDispatchFailure``.
"""

from __future__ import annotations

from aios.gateway.types import AttemptOutcome, AttemptRecord


class GatewayError(Exception):
    """Base class for all routing layer errors."""


class NoUsableCredential(GatewayError):
    """The provider has no active, non-exhausted credential."""

    def __init__(self, provider_id: str):
        super().__init__(f"No active keys for {provider_id}")
        self.provider_id = provider_id


class ProviderError(GatewayError):
    """A vendor call failed. Counts against the credential that was used."""

    def __init__(self, message: str, provider_id: str = "", status_code: int = 0):
        super().__init__(message)
        self.provider_id = provider_id
        self.status_code = status_code


class AuthFailure(ProviderError):
    """Credential rejected by the vendor (invalid or revoked)."""


class TransientFailure(ProviderError):
    """Rate limit, server error, timeout or transport error."""


class ContentBlocked(ProviderError):
    """Vendor refused to answer (safety filter). Not the credential's fault."""


class AggregateDispatchFailure(GatewayError):
    """Every provider in the dispatch plan was skipped or failed."""

    def __init__(self, attempts: list[AttemptRecord]):
        self.attempts = attempts
        details = "; ".join(f"{a.provider}: {a.error}" for a in attempts) or "empty plan"
        super().__init__(f"All providers failed. Details: {details}")

    @property
    def errors(self) -> list[AttemptRecord]:
        """Attempts where the provider was actually invoked and failed."""
        return [a for a in self.attempts if a.outcome == AttemptOutcome.FAILED]

    @property
    def tried_providers(self) -> list[str]:
        return [a.provider for a in self.attempts]


class CredentialRejected(GatewayError, ValueError):
    """A key could not be added to a pool (too short or duplicate)."""


class UnknownProvider(GatewayError, KeyError):
    """No provider with this id is registered."""

    def __init__(self, provider_id: str):
        super().__init__(provider_id)
        self.provider_id = provider_id

    def __str__(self) -> str:
        return f"Unknown provider: {self.provider_id}"
