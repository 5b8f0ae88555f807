"""Tests for LanguageModelRegistry and modelhub.llm.init."""

from __future__ import annotations

import asyncio
import logging

import httpx
import pytest

from modelhub.config import SettingsStore
from modelhub.credentials import InMemoryCredentialStore
from modelhub.llm import LanguageModelRegistry, init
from modelhub.llm.errors import AuthenticationRequired
from tests.mock_providers import MockProvider, authenticated_provider


class TestProviderManagement:

    def test_empty_registry(self):
        reg = LanguageModelRegistry()
        assert reg.providers() == []
        assert reg.provider("anything") is None
        assert reg.available_models() == []

    @pytest.mark.asyncio
    async def test_registration_order_is_kept(self):
        reg = LanguageModelRegistry()
        reg.register_provider(MockProvider("zeta"))
        reg.register_provider(MockProvider("alpha"))
        assert reg.provider_ids == ["zeta", "alpha"]

    @pytest.mark.asyncio
    async def test_reregistration_replaces(self, caplog):
        reg = LanguageModelRegistry()
        first = MockProvider("mock")
        second = MockProvider("mock")
        reg.register_provider(first)
        with caplog.at_level(logging.WARNING):
            reg.register_provider(second)

        assert reg.provider("mock") is second
        assert len(reg.providers()) == 1
        assert "Replacing language model provider" in caplog.text

    @pytest.mark.asyncio
    async def test_unregister(self):
        reg = LanguageModelRegistry()
        reg.register_provider(MockProvider("mock"))
        reg.unregister_provider("mock")
        reg.unregister_provider("mock")
        assert reg.providers() == []

    @pytest.mark.asyncio
    async def test_changes_are_notified(self):
        reg = LanguageModelRegistry()
        calls: list[int] = []
        reg.subscribe(lambda: calls.append(1))

        reg.register_provider(await authenticated_provider("mock", ["m1"]))
        reg.select_active_model("mock", "m1")
        reg.unregister_provider("mock")
        assert len(calls) == 3


class TestModelLookup:

    @pytest.mark.asyncio
    async def test_available_models_skip_unauthenticated(self):
        reg = LanguageModelRegistry()
        reg.register_provider(await authenticated_provider("online", ["b", "a"]))
        reg.register_provider(MockProvider("offline", None))

        models = reg.available_models()
        assert [(m.provider_id, m.id) for m in models] == [("online", "a"), ("online", "b")]

    @pytest.mark.asyncio
    async def test_model_lookup(self):
        reg = LanguageModelRegistry()
        reg.register_provider(await authenticated_provider("mock", ["m1", "m2"]))
        assert reg.model("mock", "m2").id == "m2"

    @pytest.mark.asyncio
    async def test_unknown_provider(self):
        reg = LanguageModelRegistry()
        with pytest.raises(KeyError, match="nope"):
            reg.model("nope", "m1")

    @pytest.mark.asyncio
    async def test_unknown_model(self):
        reg = LanguageModelRegistry()
        reg.register_provider(await authenticated_provider("mock", ["m1"]))
        with pytest.raises(KeyError, match="m9"):
            reg.model("mock", "m9")

    @pytest.mark.asyncio
    async def test_unauthenticated_provider(self):
        reg = LanguageModelRegistry()
        reg.register_provider(MockProvider("mock", ["m1"]))
        with pytest.raises(AuthenticationRequired):
            reg.model("mock", "m1")


class TestActiveModel:

    @pytest.mark.asyncio
    async def test_nothing_selected(self):
        reg = LanguageModelRegistry()
        assert reg.active_model is None
        assert reg.active_provider is None

    @pytest.mark.asyncio
    async def test_select(self):
        reg = LanguageModelRegistry()
        provider = await authenticated_provider("mock", ["m1"])
        reg.register_provider(provider)

        selected = reg.select_active_model("mock", "m1")
        assert selected.id == "m1"
        assert reg.active_provider is provider
        assert reg.active_model.id == "m1"

    @pytest.mark.asyncio
    async def test_active_model_follows_provider_state(self):
        reg = LanguageModelRegistry()
        provider = await authenticated_provider("mock", ["m1"])
        reg.register_provider(provider)
        reg.select_active_model("mock", "m1")

        provider.available = ["m2"]
        await provider.reset_credentials()
        assert reg.active_model is None

        provider.available = ["m1", "m2"]
        await provider.reset_credentials()
        assert reg.active_model.id == "m1"

    @pytest.mark.asyncio
    async def test_unregistering_clears_selection(self):
        reg = LanguageModelRegistry()
        reg.register_provider(await authenticated_provider("mock", ["m1"]))
        reg.select_active_model("mock", "m1")
        reg.unregister_provider("mock")
        assert reg.active_model is None


class TestInit:

    @pytest.mark.asyncio
    async def test_registers_builtin_providers(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"models": []})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            reg = init(SettingsStore(), client, InMemoryCredentialStore())
            assert reg.provider_ids == ["ollama", "openai"]
            await asyncio.gather(
                *(p.state.refresh() for p in reg.providers()), return_exceptions=True
            )
            for provider in reg.providers():
                provider.close()
