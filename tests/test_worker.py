"""Tests for worker component loading."""

import textwrap

import pytest

from flowmill.services.scheduling.worker import load_components
from flowmill.settings import settings

PLUGIN = textwrap.dedent(
    """
    from flowmill.services.registry import HandlerDescriptor, HandlerField


    class Feed:
        async def fetch(self, config, context):
            return []


    class Client:
        async def generate(self, request):
            raise NotImplementedError


    def register(handlers, registry):
        handlers.register(
            HandlerDescriptor("feed", "fetch", Feed(), fields={"url": HandlerField("URL")})
        )


    def make_client():
        return Client()
    """
)


@pytest.fixture
def plugin(tmp_path, monkeypatch):
    (tmp_path / "flowmill_test_plugin.py").write_text(PLUGIN)
    monkeypatch.syspath_prepend(str(tmp_path))
    return "flowmill_test_plugin"


class TestLoadComponents:
    """Handlers and the AI client come from configured modules."""

    def test_defaults(self, monkeypatch):
        monkeypatch.setattr(settings, "handler_modules", [])
        monkeypatch.setattr(settings, "ai_client_factory", None)

        components = load_components()

        assert components.registry.valid_types() == ["fetch", "ai", "publish", "update"]
        assert components.ai_client is None
        assert not components.handlers.exists("feed")

    def test_plugin_module(self, monkeypatch, plugin):
        monkeypatch.setattr(settings, "handler_modules", [plugin])
        monkeypatch.setattr(settings, "ai_client_factory", f"{plugin}:make_client")

        components = load_components()

        assert components.handlers.exists("feed")
        assert list(components.handlers.get_config_fields("feed")) == ["url"]
        assert type(components.ai_client).__name__ == "Client"

    def test_broken_module_is_skipped(self, monkeypatch, plugin):
        monkeypatch.setattr(settings, "handler_modules", ["no_such_module_here", plugin])
        monkeypatch.setattr(settings, "ai_client_factory", None)

        components = load_components()

        assert components.handlers.exists("feed")
