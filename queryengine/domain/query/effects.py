"""
Non-critical side effects.

Cache writes and metric records must never fail a query. The orchestrator
runs them through SideEffects.run(), which logs and swallows any failure.
"""

import logging
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class SideEffects:
    """Log-and-continue wrapper for fire-and-forget work."""

    def __init__(self, log: Optional[logging.Logger] = None):
        self._log = log or logger

    def run(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return fn(*args, **kwargs)
        except Exception as e:
            self._log.warning(f"Non-critical effect '{name}' failed: {e}", exc_info=True)
            return None
