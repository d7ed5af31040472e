"""
Tests for logging configuration.
"""

import logging

import pytest

from vlm_bridge.utils.logging import PACKAGE_LOGGER, configure_logging


@pytest.fixture
def package_logger():
    logger = logging.getLogger(PACKAGE_LOGGER)
    handlers, level = list(logger.handlers), logger.level
    yield logger
    logger.handlers = handlers
    logger.setLevel(level)


@pytest.mark.unit
def test_configure_logging_sets_level(package_logger) -> None:
    """Test that the requested level is applied to the package logger."""
    configure_logging("debug")
    assert package_logger.level == logging.DEBUG


@pytest.mark.unit
def test_configure_logging_adds_one_handler(package_logger) -> None:
    """Test that repeated calls do not stack handlers."""
    configure_logging(logging.INFO)
    configure_logging(logging.INFO)

    tagged = [h for h in package_logger.handlers if getattr(h, "_vlm_bridge", False)]
    assert len(tagged) == 1


@pytest.mark.unit
def test_configure_logging_uses_config_default(package_logger, monkeypatch) -> None:
    """Test that the level defaults to the configured log level."""
    import vlm_bridge.config as config_module

    monkeypatch.setattr(config_module, "_config_instance", None)
    monkeypatch.setenv("VLM_BRIDGE_LOG_LEVEL", "ERROR")

    configure_logging()

    assert package_logger.level == logging.ERROR


@pytest.mark.unit
def test_root_logger_untouched(package_logger) -> None:
    """Test that the root logger gains no handlers."""
    root_handlers = list(logging.getLogger().handlers)
    configure_logging(logging.INFO)
    assert logging.getLogger().handlers == root_handlers
