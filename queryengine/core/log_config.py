"""
Logging configuration.

Every module logs through ``logging.getLogger(__name__)``. The format carries
a ``query_id`` field so lines emitted while a definition executes can be
correlated; records without one get ``-``.
"""

import logging
from typing import Optional

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - [%(query_id)s] %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


class QueryIdFilter(logging.Filter):
    def filter(self, record):
        if not hasattr(record, 'query_id'):
            record.query_id = '-'
        return True


def configure_logging(level: Optional[str] = None) -> None:
    """Install the engine's log format on the root logger."""
    logging.basicConfig(
        level=getattr(logging, (level or "INFO").upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
    )
    for handler in logging.root.handlers:
        if not any(isinstance(f, QueryIdFilter) for f in handler.filters):
            handler.addFilter(QueryIdFilter())
