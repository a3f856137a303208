"""
Core

Settings and logging setup shared by every layer.
"""

from queryengine.core.config import Settings, get_settings, settings
from queryengine.core.log_config import configure_logging, QueryIdFilter

__all__ = ["Settings", "get_settings", "settings", "configure_logging", "QueryIdFilter"]
