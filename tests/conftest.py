from collections.abc import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient

from aios.core.config import settings

# Override settings for tests
settings.config_backend = "memory"
settings.admin_token = ""
settings.fernet_key = ""
settings.app_env = "development"

from aios.gateway.config_blob import default_providers  # noqa: E402
from aios.gateway.config_store import InMemoryConfigStore  # noqa: E402
from aios.gateway.dispatcher import Dispatcher  # noqa: E402
from aios.main import app  # noqa: E402

TEST_FERNET_KEY = "KxJCocbnA3KD20pkgSN3uUZybasKP1X9lAJDX4oLxoQ="  # test-only Fernet key


@pytest.fixture
def store() -> InMemoryConfigStore:
    return InMemoryConfigStore()


@pytest.fixture
def dispatcher(store: InMemoryConfigStore) -> Dispatcher:
    """Built-in providers, one key each."""
    providers = default_providers()
    for config in providers:
        config.credentials.add(f"{config.id}-test-key-0001")
    return Dispatcher(store=store, providers=providers, timeout=5.0)


@pytest.fixture
async def client(dispatcher: Dispatcher) -> AsyncGenerator[AsyncClient, None]:
    # ASGITransport does not run the lifespan; wire the dispatcher directly
    app.state.dispatcher = dispatcher
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
def admin_token():
    """Enable the admin guard for the duration of a test."""
    settings.admin_token = "test-admin-token"
    yield settings.admin_token
    settings.admin_token = ""


@pytest.fixture
def fernet_key():
    settings.fernet_key = TEST_FERNET_KEY
    yield TEST_FERNET_KEY
    settings.fernet_key = ""
