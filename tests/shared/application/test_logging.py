"""Logging is wired once, when the checkout domain is imported."""

import logging

import pytest
import structlog
from shared import logging as checkout_logging


@pytest.fixture
def reconfigure():
    yield
    checkout_logging.configure_logging()


class TestConfiguration:
    def test_importing_the_domain_configures_structlog(self):
        import shared.domain  # noqa: F401

        assert structlog.is_configured()
        assert logging.getLogger().level == logging.WARNING

    def test_console_renderer_outside_production(self):
        renderer = structlog.get_config()["processors"][-1]
        assert isinstance(renderer, structlog.dev.ConsoleRenderer)

    def test_no_custom_exception_formatter_in_the_chain(self):
        names = [type(processor).__name__ for processor in structlog.get_config()["processors"]]
        assert "RichTracebackFormatter" not in names

    def test_json_in_production(self, reconfigure, monkeypatch):
        monkeypatch.setenv("PROTEAN_ENV", "production")
        checkout_logging.setup_structlog()

        assert isinstance(structlog.get_config()["processors"][-1], structlog.processors.JSONRenderer)

    def test_log_level_override(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "ERROR")
        assert checkout_logging.get_log_level() == "ERROR"


class TestContext:
    def test_bound_context_reaches_every_logger(self):
        checkout_logging.add_context(order_id="ord-1")
        assert structlog.contextvars.get_contextvars() == {"order_id": "ord-1"}

        checkout_logging.clear_context()
        assert structlog.contextvars.get_contextvars() == {}
