"""Tests for the dispatcher: routing, failover and registry administration."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from aios.gateway.config_store import InMemoryConfigStore, JsonFileConfigStore
from aios.gateway.credentials import CredentialPool
from aios.gateway.dispatcher import Dispatcher
from aios.gateway.errors import AggregateDispatchFailure, CredentialRejected, UnknownProvider
from aios.gateway.routing import RoutingTable
from aios.gateway.types import AttemptOutcome, ModelInfo, ProviderConfig, Route, Task


def _make_httpx_response(status_code: int, json_data: dict | None = None, text: str = "") -> httpx.Response:
    request = httpx.Request("POST", "https://example.com")
    if json_data is not None:
        return httpx.Response(status_code, json=json_data, request=request)
    return httpx.Response(status_code, text=text, request=request)


def _ok(text: str) -> httpx.Response:
    return _make_httpx_response(
        200,
        json_data={
            "choices": [{"message": {"content": text}}],
            "usage": {"prompt_tokens": 1, "completion_tokens": 1, "total_tokens": 2},
        },
    )


def _provider(provider_id: str, *keys: str, models=("m-default",)) -> ProviderConfig:
    pool = CredentialPool(provider_id)
    for key in keys:
        pool.add(key)
    return ProviderConfig(
        id=provider_id,
        name=provider_id.upper(),
        credentials=pool,
        base_url=f"https://{provider_id}.example.com/v1",
        models=[ModelInfo(id=m) for m in models],
    )


class _Vendors:
    """Fake HTTP side: answers per provider host and records every call."""

    def __init__(self, **answers):
        self.answers = answers
        self.calls: list[tuple[str, str]] = []  # (provider, model)

    async def post(self, url, json=None, headers=None):
        provider = url.split("//", 1)[1].split(".", 1)[0]
        self.calls.append((provider, json["model"]))
        answer = self.answers[provider]
        if isinstance(answer, BaseException):
            raise answer
        return answer

    def patch(self):
        mock_client = AsyncMock()
        mock_client.post.side_effect = self.post
        mock_client.__aenter__ = AsyncMock(return_value=mock_client)
        mock_client.__aexit__ = AsyncMock(return_value=None)
        patcher = patch("aios.gateway.vendor_adapters.httpx.AsyncClient")
        mock_client_cls = patcher.start()
        mock_client_cls.return_value = mock_client
        return patcher


@pytest.fixture
def abc_dispatcher() -> Dispatcher:
    providers = [
        _provider("a", "a-key-0001", models=("m1", "a-default")),
        _provider("b", "b-key-0001", models=("b-default",)),
        _provider("c", "c-key-0001", models=("c-default",)),
    ]
    routing = RoutingTable(
        canonical_mapping={"NOTES_ENGINE": Route("a", "m1")},
        default_provider_id="a",
        fallback_order=["a", "b", "c"],
    )
    return Dispatcher(providers=providers, routing=routing, timeout=5.0)


class TestFailover:
    @pytest.mark.asyncio
    async def test_first_provider_succeeds(self, abc_dispatcher):
        vendors = _Vendors(a=_ok("from a"))
        patcher = vendors.patch()
        try:
            resp = await abc_dispatcher.execute(Task(prompt="Hi", model_preference="NOTES_ENGINE"))
        finally:
            patcher.stop()

        assert resp.text == "from a"
        assert resp.provider_used == "a"
        assert resp.model_used == "m1"
        assert resp.failed_attempts == []
        assert vendors.calls == [("a", "m1")]

    @pytest.mark.asyncio
    async def test_falls_back_with_own_default_model(self, abc_dispatcher):
        vendors = _Vendors(a=_make_httpx_response(500, text="boom"), b=_ok("from b"), c=_ok("from c"))
        patcher = vendors.patch()
        try:
            resp = await abc_dispatcher.execute(Task(prompt="Hi", model_preference="NOTES_ENGINE"))
        finally:
            patcher.stop()

        assert resp.text == "from b"
        assert resp.provider_used == "b"
        assert resp.model_used == "b-default"
        assert [a.provider for a in resp.failed_attempts] == ["a"]
        assert resp.failed_attempts[0].error_type == "TransientFailure"
        assert vendors.calls == [("a", "m1"), ("b", "b-default")]
        assert abc_dispatcher.get_provider("a").credentials.get("a-key-0001").error_count == 1

    @pytest.mark.asyncio
    async def test_all_fail(self, abc_dispatcher):
        vendors = _Vendors(
            a=_make_httpx_response(500, text="a down"),
            b=_make_httpx_response(429, text="b limited"),
            c=httpx.ConnectError("c unreachable"),
        )
        patcher = vendors.patch()
        try:
            with pytest.raises(AggregateDispatchFailure) as exc_info:
                await abc_dispatcher.execute(Task(prompt="Hi"))
        finally:
            patcher.stop()

        failure = exc_info.value
        assert failure.tried_providers == ["a", "b", "c"]
        assert [e.provider for e in failure.errors] == ["a", "b", "c"]
        assert "a down" in str(failure)
        assert "b limited" in str(failure)

    @pytest.mark.asyncio
    async def test_provider_without_usable_key_is_skipped(self, abc_dispatcher):
        abc_dispatcher.get_provider("a").credentials.mark_exhausted("a-key-0001")
        vendors = _Vendors(b=_ok("from b"))
        patcher = vendors.patch()
        try:
            resp = await abc_dispatcher.execute(Task(prompt="Hi", model_preference="NOTES_ENGINE"))
        finally:
            patcher.stop()

        assert resp.provider_used == "b"
        assert vendors.calls == [("b", "b-default")]
        # skipped providers are not failures
        assert resp.failed_attempts == []

    @pytest.mark.asyncio
    async def test_everything_skipped(self):
        providers = [_provider("a"), _provider("b")]
        dispatcher = Dispatcher(
            providers=providers,
            routing=RoutingTable(canonical_mapping={}, default_provider_id="a", fallback_order=["a", "b"]),
        )
        vendors = _Vendors()
        patcher = vendors.patch()
        try:
            with pytest.raises(AggregateDispatchFailure) as exc_info:
                await dispatcher.execute(Task(prompt="Hi"))
        finally:
            patcher.stop()

        failure = exc_info.value
        assert vendors.calls == []
        assert failure.tried_providers == ["a", "b"]
        assert all(a.outcome == AttemptOutcome.SKIPPED for a in failure.attempts)
        assert failure.errors == []

    @pytest.mark.asyncio
    async def test_disabled_and_unknown_providers_skipped(self, abc_dispatcher):
        abc_dispatcher.get_provider("a").enabled = False
        abc_dispatcher.update_routing_table({}, fallback_order=["ghost", "a", "c"])
        vendors = _Vendors(b=_make_httpx_response(500, text="b down"), c=_ok("from c"))
        patcher = vendors.patch()
        try:
            resp = await abc_dispatcher.execute(Task(prompt="Hi", model_preference="b"))
        finally:
            patcher.stop()

        # b is targeted by provider id, so it runs on its own default model
        assert resp.provider_used == "c"
        assert vendors.calls == [("b", "b-default"), ("c", "c-default")]
        assert [a.provider for a in resp.failed_attempts] == ["b"]

    @pytest.mark.asyncio
    async def test_plan_deduplicated(self, abc_dispatcher):
        abc_dispatcher.update_routing_table(
            {"NOTES_ENGINE": Route("b", "b-default")}, fallback_order=["b", "a", "b", "a"]
        )
        vendors = _Vendors(a=_make_httpx_response(503), b=_make_httpx_response(503))
        patcher = vendors.patch()
        try:
            with pytest.raises(AggregateDispatchFailure) as exc_info:
                await abc_dispatcher.execute(Task(prompt="Hi", model_preference="NOTES_ENGINE"))
        finally:
            patcher.stop()

        assert exc_info.value.tried_providers == ["b", "a"]
        assert vendors.calls == [("b", "b-default"), ("a", "m1")]

    @pytest.mark.asyncio
    async def test_unresolved_preference_uses_default_provider(self, abc_dispatcher):
        abc_dispatcher.update_routing_table({}, default_provider_id="c")
        vendors = _Vendors(c=_ok("from c"))
        patcher = vendors.patch()
        try:
            resp = await abc_dispatcher.execute(Task(prompt="Hi", model_preference="SUMMARY_ENGINE"))
        finally:
            patcher.stop()

        assert resp.provider_used == "c"
        assert vendors.calls == [("c", "c-default")]

    @pytest.mark.asyncio
    async def test_content_blocked_moves_on_without_penalty(self):
        # Gemini safety block on the target, OpenAI-compatible fallback answers
        gemini = ProviderConfig(id="gemini", name="Gemini", credentials=CredentialPool("gemini"))
        gemini.credentials.add("gemini-key-0001")
        dispatcher = Dispatcher(
            providers=[gemini, _provider("b", "b-key-0001")],
            routing=RoutingTable(canonical_mapping={}, default_provider_id="gemini", fallback_order=["b"]),
        )
        blocked = _make_httpx_response(200, json_data={"candidates": [{"finishReason": "SAFETY"}]})

        with patch("aios.gateway.vendor_adapters.httpx.AsyncClient") as mock_client_cls:
            mock_client = AsyncMock()
            mock_client.post.side_effect = [blocked, _ok("from b")]
            mock_client.__aenter__ = AsyncMock(return_value=mock_client)
            mock_client.__aexit__ = AsyncMock(return_value=None)
            mock_client_cls.return_value = mock_client

            resp = await dispatcher.execute(Task(prompt="Hi"))

        assert resp.provider_used == "b"
        assert resp.failed_attempts[0].error_type == "ContentBlocked"
        assert gemini.credentials.get("gemini-key-0001").error_count == 0

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self, abc_dispatcher):
        vendors = _Vendors(a=asyncio.CancelledError(), b=_ok("from b"))
        patcher = vendors.patch()
        try:
            with pytest.raises(asyncio.CancelledError):
                await abc_dispatcher.execute(Task(prompt="Hi"))
        finally:
            patcher.stop()

        assert vendors.calls == [("a", "m1")]
        assert abc_dispatcher.get_provider("a").credentials.get("a-key-0001").error_count == 0

    @pytest.mark.asyncio
    async def test_concurrent_dispatches(self, abc_dispatcher):
        vendors = _Vendors(a=_ok("from a"))
        patcher = vendors.patch()
        try:
            responses = await asyncio.gather(*(abc_dispatcher.execute(Task(prompt=f"req {i}")) for i in range(5)))
        finally:
            patcher.stop()

        assert all(r.provider_used == "a" for r in responses)
        assert abc_dispatcher.get_provider("a").credentials.get("a-key-0001").usage_count == 5

    @pytest.mark.asyncio
    async def test_in_flight_call_keeps_its_snapshot(self, abc_dispatcher):
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_post(url, json=None, headers=None):
            started.set()
            await release.wait()
            return _ok(f"{url} {json['model']}")

        with patch("aios.gateway.vendor_adapters.httpx.AsyncClient") as mock_client_cls:
            mock_client = AsyncMock()
            mock_client.post.side_effect = slow_post
            mock_client.__aenter__ = AsyncMock(return_value=mock_client)
            mock_client.__aexit__ = AsyncMock(return_value=None)
            mock_client_cls.return_value = mock_client

            pending = asyncio.create_task(abc_dispatcher.execute(Task(prompt="Hi", model_preference="NOTES_ENGINE")))
            await started.wait()

            replacement = _provider("a", "a-key-0002", models=("m-new",))
            replacement.base_url = "https://a-replaced.example.com/v1"
            abc_dispatcher.update_provider(replacement)
            abc_dispatcher.update_routing_table({"NOTES_ENGINE": Route("a", "m-new")})

            release.set()
            resp = await pending

        assert resp.text == "https://a.example.com/v1/chat/completions m1"
        assert abc_dispatcher.get_provider("a").base_url == "https://a-replaced.example.com/v1"


class TestRegistry:
    def test_default_registry(self):
        dispatcher = Dispatcher()
        assert [p.id for p in dispatcher.get_providers()] == ["gemini", "groq", "openai", "deepseek"]
        assert dispatcher.get_routing_table().default_provider_id == "gemini"

    def test_unknown_provider(self, abc_dispatcher):
        with pytest.raises(UnknownProvider):
            abc_dispatcher.get_provider("zzz")
        with pytest.raises(KeyError):
            abc_dispatcher.add_key("zzz", "some-key")

    def test_get_routing_table_returns_copy(self, abc_dispatcher):
        table = abc_dispatcher.get_routing_table()
        table.fallback_order.clear()
        assert abc_dispatcher.get_routing_table().fallback_order == ["a", "b", "c"]

    def test_update_routing_table(self, abc_dispatcher):
        abc_dispatcher.update_routing_table({"MCQ_ENGINE": Route("c", "c-default")}, default_provider_id="c")
        table = abc_dispatcher.get_routing_table()
        assert table.canonical_mapping == {"MCQ_ENGINE": Route("c", "c-default")}
        assert table.default_provider_id == "c"
        assert table.fallback_order == ["a", "b", "c"]

    def test_key_administration(self, abc_dispatcher):
        abc_dispatcher.add_key("b", "b-key-0002", label="spare")
        with pytest.raises(CredentialRejected):
            abc_dispatcher.add_key("b", "b-key-0002")

        pool = abc_dispatcher.get_provider("b").credentials
        assert len(pool) == 2

        assert abc_dispatcher.set_key_active("b", "b-key-0001", False)
        assert [c.key for c in pool.usable()] == ["b-key-0002"]

        pool.mark_exhausted("b-key-0002")
        assert abc_dispatcher.reset_key("b", "b-key-0002")
        assert pool.get("b-key-0002").is_usable

        assert abc_dispatcher.remove_key("b", "b-key-0001")
        assert len(pool) == 1

    @pytest.mark.asyncio
    async def test_test_connection_unknown_provider(self, abc_dispatcher):
        with pytest.raises(UnknownProvider):
            await abc_dispatcher.test_connection("zzz")

    def test_status(self, abc_dispatcher):
        status = abc_dispatcher.status()
        assert status["default_provider_id"] == "a"
        assert [p["id"] for p in status["providers"]] == ["a", "b", "c"]
        assert status["providers"][0]["default_model"] == "m1"
        assert status["providers"][0]["credentials"]["usable"] == 1


class TestPersistence:
    @pytest.mark.asyncio
    async def test_save_and_reload(self):
        store = InMemoryConfigStore({"theme": "dark"})
        dispatcher = Dispatcher(store=store)
        dispatcher.add_key("groq", "gsk_saved_key")
        dispatcher.update_routing_table({"CHAT_ENGINE": Route("groq", "llama-3.1-8b-instant")})
        await dispatcher.save()

        fresh = Dispatcher(store=store)
        await fresh.reload()

        assert [c.key for c in fresh.get_provider("groq").credentials] == ["gsk_saved_key"]
        assert fresh.get_routing_table().canonical_mapping == {"CHAT_ENGINE": Route("groq", "llama-3.1-8b-instant")}
        assert (await store.load())["theme"] == "dark"

    @pytest.mark.asyncio
    async def test_reload_from_empty_store_uses_defaults(self):
        dispatcher = Dispatcher(store=InMemoryConfigStore(), providers=[])
        await dispatcher.reload()
        assert [p.id for p in dispatcher.get_providers()] == ["gemini", "groq", "openai", "deepseek"]

    @pytest.mark.asyncio
    async def test_reload_discards_unsaved_changes(self):
        store = InMemoryConfigStore()
        dispatcher = Dispatcher(store=store)
        dispatcher.add_key("openai", "sk-unsaved")
        await dispatcher.reload()
        assert len(dispatcher.get_provider("openai").credentials) == 0

    @pytest.mark.asyncio
    async def test_reload_ignores_provider_without_adapter(self):
        store = InMemoryConfigStore({"aiProviders": [{"id": "mystery", "name": "Mystery"}, {"id": "groq"}]})
        dispatcher = Dispatcher(store=store)
        await dispatcher.reload()
        assert [p.id for p in dispatcher.get_providers()] == ["groq"]

    @pytest.mark.asyncio
    async def test_reload_corrupt_file_uses_defaults(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text("{not json", encoding="utf-8")
        dispatcher = Dispatcher(store=JsonFileConfigStore(path), providers=[])

        await dispatcher.reload()

        assert [p.id for p in dispatcher.get_providers()] == ["gemini", "groq", "openai", "deepseek"]
        assert dispatcher.get_routing_table().default_provider_id == "gemini"

    @pytest.mark.asyncio
    async def test_save_overwrites_corrupt_file(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text("{not json", encoding="utf-8")
        store = JsonFileConfigStore(path)
        dispatcher = Dispatcher(store=store)
        dispatcher.add_key("groq", "gsk_after_corruption")

        await dispatcher.save()

        blob = await store.load()
        groq = next(p for p in blob["aiProviders"] if p["id"] == "groq")
        assert [k["key"] for k in groq["apiKeys"]] == ["gsk_after_corruption"]

    @pytest.mark.asyncio
    async def test_reload_keeps_valid_providers_next_to_a_bad_entry(self):
        store = InMemoryConfigStore(
            {"aiProviders": [{"id": "groq", "apiKeys": [{"key": "gsk-real-key-1"}]}, {"name": "missing id"}]}
        )
        dispatcher = Dispatcher(store=store)
        await dispatcher.reload()

        assert [p.id for p in dispatcher.get_providers()] == ["groq"]
        assert [c.key for c in dispatcher.get_provider("groq").credentials] == ["gsk-real-key-1"]
