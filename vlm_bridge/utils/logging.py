"""
Logging configuration for the vlm_bridge package.

Modules log through ``logging.getLogger(__name__)``; nothing is emitted until
an application installs a handler. configure_logging attaches a single
stream handler to the package logger (never the root logger).
"""

import logging
from typing import Optional, Union

PACKAGE_LOGGER = "vlm_bridge"

_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: Optional[Union[int, str]] = None) -> logging.Logger:
    """Attach a stream handler to the package logger and set its level.

    Args:
        level: Logging level name or number. Defaults to the configured
            ``log_level`` (VLM_BRIDGE_LOG_LEVEL).

    Returns:
        The package logger.
    """
    if level is None:
        from vlm_bridge.config import get_config

        level = get_config().log_level
    if isinstance(level, str):
        level = level.upper()

    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(level)

    if not any(getattr(h, "_vlm_bridge", False) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_FORMAT))
        handler._vlm_bridge = True
        logger.addHandler(handler)

    return logger
