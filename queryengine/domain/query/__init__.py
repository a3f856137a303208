"""
Query Domain

Query building, validation, parameter processing, result shaping and the
orchestrating service.
"""

from queryengine.domain.query.builder import BuiltQuery, QueryBuilder
from queryengine.domain.query.effects import SideEffects
from queryengine.domain.query.parameters import ParameterProcessor
from queryengine.domain.query.registry import QueryDefinitionRegistry
from queryengine.domain.query.service import QueryService
from queryengine.domain.query.transformer import ResultTransformer
from queryengine.domain.query.validator import QueryValidator

__all__ = [
    "BuiltQuery",
    "QueryBuilder",
    "SideEffects",
    "ParameterProcessor",
    "QueryDefinitionRegistry",
    "QueryService",
    "ResultTransformer",
    "QueryValidator",
]
