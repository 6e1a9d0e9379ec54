"""AI provider routing and resilience layer.

Accepts content-generation tasks and dispatches them to third-party AI
providers with:
  - Routing Table (logical engine → provider + model)
  - Credential Pools (per-provider key rotation and health tracking)
  - Provider Adapters (OpenAI-compatible family, Gemini)
  - Dispatcher (ordered failover, aggregate failure)
  - Config blob persistence (memory, JSON file, SQL)
"""

from aios.gateway.dispatcher import Dispatcher
from aios.gateway.errors import (
    AggregateDispatchFailure,
    AuthFailure,
    ContentBlocked,
    CredentialRejected,
    GatewayError,
    NoUsableCredential,
    ProviderError,
    TransientFailure,
    UnknownProvider,
)
from aios.gateway.types import Response, Route, Task, TaskType

__all__ = [
    "AggregateDispatchFailure",
    "AuthFailure",
    "ContentBlocked",
    "CredentialRejected",
    "Dispatcher",
    "GatewayError",
    "NoUsableCredential",
    "ProviderError",
    "Response",
    "Route",
    "Task",
    "TaskType",
    "TransientFailure",
    "UnknownProvider",
]
