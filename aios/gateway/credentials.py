"""Per-provider credential pool with health tracking.

Selection is uniform-random among usable credentials. A credential becomes
unusable when an operator deactivates it or when it is exhausted, either by
an authentication failure or by accumulating more than ``ERROR_THRESHOLD``
errors. Exhaustion is only cleared by ``reset``.
"""

from __future__ import annotations

import logging
import random
import threading
from collections.abc import Iterable, Iterator
from datetime import datetime, timezone

from aios.core.logging import mask_key
from aios.core.metrics import CREDENTIALS_EXHAUSTED
from aios.gateway.errors import CredentialRejected
from aios.gateway.types import Credential

logger = logging.getLogger(__name__)

MIN_KEY_LENGTH = 5
ERROR_THRESHOLD = 10  # errors beyond this exhaust the key


class CredentialPool:
    """Credentials of a single provider.

    Usage:
        pool = CredentialPool("groq")
        pool.add("gsk_...")
        key = pool.select()        # None when nothing is usable
        pool.mark_error(key)       # after a failed call
        pool.mark_exhausted(key)   # after an auth failure
    """

    def __init__(self, provider_id: str, credentials: Iterable[Credential] = ()):
        self.provider_id = provider_id
        self._credentials: list[Credential] = list(credentials)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._credentials)

    def __iter__(self) -> Iterator[Credential]:
        return iter(list(self._credentials))

    def _find(self, key: str) -> Credential | None:
        for cred in self._credentials:
            if cred.key == key:
                return cred
        return None

    def get(self, key: str) -> Credential | None:
        return self._find(key)

    def add(self, key: str, label: str | None = None) -> Credential:
        """Append a new active credential with zero counters."""
        if not key or len(key) < MIN_KEY_LENGTH:
            raise CredentialRejected(f"Key must be at least {MIN_KEY_LENGTH} characters")
        with self._lock:
            if self._find(key) is not None:
                raise CredentialRejected(f"Key {mask_key(key)} already exists for {self.provider_id}")
            cred = Credential(key=key, label=label)
            self._credentials.append(cred)
        logger.info("Key %s added to %s", mask_key(key), self.provider_id)
        return cred

    def remove(self, key: str) -> bool:
        with self._lock:
            cred = self._find(key)
            if cred is None:
                return False
            self._credentials.remove(cred)
        logger.info("Key %s removed from %s", mask_key(key), self.provider_id)
        return True

    def usable(self) -> list[Credential]:
        return [c for c in self._credentials if c.is_usable]

    def has_usable(self) -> bool:
        return any(c.is_usable for c in self._credentials)

    def select(self) -> str | None:
        """Pick a usable key at random and record the usage."""
        with self._lock:
            candidates = self.usable()
            if not candidates:
                return None
            selected = random.choice(candidates)
            selected.usage_count += 1
            selected.last_used_at = datetime.now(timezone.utc)
            return selected.key

    def mark_exhausted(self, key: str) -> None:
        with self._lock:
            cred = self._find(key)
            if cred is None or cred.is_exhausted:
                return
            cred.is_exhausted = True
        CREDENTIALS_EXHAUSTED.labels(provider=self.provider_id).inc()
        logger.warning("Key marked exhausted for provider %s: %s", self.provider_id, mask_key(key))

    def mark_error(self, key: str) -> None:
        with self._lock:
            cred = self._find(key)
            if cred is None:
                return
            cred.error_count += 1
            over_threshold = cred.error_count > ERROR_THRESHOLD
        if over_threshold:
            self.mark_exhausted(key)

    def set_active(self, key: str, active: bool) -> bool:
        with self._lock:
            cred = self._find(key)
            if cred is None:
                return False
            cred.is_active = active
        return True

    def reset(self, key: str) -> bool:
        """Clear exhaustion and the error counter. The only way back from exhausted."""
        with self._lock:
            cred = self._find(key)
            if cred is None:
                return False
            cred.is_exhausted = False
            cred.error_count = 0
        logger.info("Key %s reset for provider %s", mask_key(key), self.provider_id)
        return True

    def stats(self) -> dict:
        creds = list(self._credentials)
        return {
            "provider": self.provider_id,
            "total": len(creds),
            "usable": sum(1 for c in creds if c.is_usable),
            "exhausted": sum(1 for c in creds if c.is_exhausted),
            "inactive": sum(1 for c in creds if not c.is_active),
            "usage_count": sum(c.usage_count for c in creds),
            "error_count": sum(c.error_count for c in creds),
        }
