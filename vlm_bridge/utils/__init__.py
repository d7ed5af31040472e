"""
Utilities and helper functions.

Provides:
- Logging configuration
"""

from vlm_bridge.utils.logging import configure_logging

__all__ = ["configure_logging"]
