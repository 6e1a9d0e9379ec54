"""Blob stores holding the persisted settings object.

The dispatcher only needs ``load() -> dict | None`` and ``save(dict)``.
Backends:
  - memory: process-local, for tests and ephemeral runs
  - file: a JSON file on disk
  - sql: one row of the ``system_settings`` table (SQLAlchemy async)
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine

from aios.core.config import Settings
from aios.db.base import Base
from aios.db.session import make_engine, make_session_factory
from aios.models.system_setting import SystemSetting

logger = logging.getLogger(__name__)


class ConfigStore(ABC):
    """Key-value persistence for the settings blob."""

    async def init(self) -> None:
        """Prepare the backend (create tables, directories). Optional."""

    async def close(self) -> None:
        """Release backend resources. Optional."""

    @abstractmethod
    async def load(self) -> Any:
        """Return the stored blob, or None when nothing was saved yet."""
        ...

    @abstractmethod
    async def save(self, blob: dict[str, Any]) -> None:
        ...


class InMemoryConfigStore(ConfigStore):
    def __init__(self, blob: dict[str, Any] | None = None):
        self._blob = copy.deepcopy(blob) if blob is not None else None
        self.save_count = 0

    async def load(self) -> Any:
        return copy.deepcopy(self._blob)

    async def save(self, blob: dict[str, Any]) -> None:
        self._blob = copy.deepcopy(blob)
        self.save_count += 1


class JsonFileConfigStore(ConfigStore):
    """Whole blob in one JSON file, replaced atomically on save."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def _read(self) -> Any:
        if not self.path.exists():
            return None
        return json.loads(self.path.read_text(encoding="utf-8"))

    def _write(self, blob: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(blob, ensure_ascii=False, indent=2), encoding="utf-8")
        os.replace(tmp, self.path)

    async def load(self) -> Any:
        return await asyncio.to_thread(self._read)

    async def save(self, blob: dict[str, Any]) -> None:
        await asyncio.to_thread(self._write, blob)


class SqlConfigStore(ConfigStore):
    """Blob stored as JSON text in ``system_settings`` under ``key``."""

    def __init__(self, engine: AsyncEngine, key: str):
        self.engine = engine
        self.key = key
        self._session_factory = make_session_factory(engine)

    async def init(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        await self.engine.dispose()

    async def load(self) -> Any:
        async with self._session_factory() as session:
            result = await session.execute(select(SystemSetting.value).where(SystemSetting.key == self.key))
            value = result.scalar_one_or_none()
        if value is None:
            return None
        return json.loads(value)

    async def save(self, blob: dict[str, Any]) -> None:
        value = json.dumps(blob, ensure_ascii=False)
        async with self._session_factory() as session:
            row = await session.get(SystemSetting, self.key)
            if row is None:
                session.add(SystemSetting(key=self.key, value=value))
            else:
                row.value = value
            await session.commit()


def build_config_store(settings: Settings) -> ConfigStore:
    """Factory: pick the backend named by ``settings.config_backend``."""
    backend = settings.config_backend
    if backend == "memory":
        return InMemoryConfigStore()
    if backend == "file":
        return JsonFileConfigStore(settings.config_file)
    if backend == "sql":
        return SqlConfigStore(make_engine(settings.database_url), key=settings.config_key)
    raise ValueError(f"Unknown config backend: {backend}")
