"""Logging setup of the command-line entry point."""
import logging

import pytest

from a2sapi.__main__ import NOISY_LOGGERS, configure_logging


@pytest.fixture
def reset_levels():
    names = NOISY_LOGGERS + ("a2sapi.geo",)
    yield
    for name in names:
        logging.getLogger(name).setLevel(logging.NOTSET)


class TestConfigureLogging:
    def test_debug_pins_third_party_loggers(self, reset_levels):
        configure_logging({"A2SAPI_DEBUG": "1"})
        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogger("aiosqlite").level == logging.WARNING
        assert logging.getLogger("uvicorn.access").level == logging.WARNING
        assert logging.getLogger("a2sapi.geo").level == logging.NOTSET

    def test_network_debug_also_quiets_geolocation(self, reset_levels):
        configure_logging({"A2SAPI_NETWORK_DEBUG": "1"})
        assert logging.getLogger("httpcore").level == logging.WARNING
        assert logging.getLogger("a2sapi.geo").level == logging.WARNING

    def test_info_leaves_levels_alone(self, reset_levels):
        configure_logging({})
        assert logging.getLogger("httpx").level == logging.NOTSET
