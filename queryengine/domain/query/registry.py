"""
Query definition registry.

Holds the live definitions a process can execute. Definitions are created by
registration, updated only by full validated replacement and removed by
explicit deletion. Replacing or removing a definition also drops its cached
results.

Definition files are YAML or JSON: either a list of definitions or a
mapping with a ``queries`` list.

    queries:
      - id: inactive_users
        name: Inactive users
        version: 1.0.0
        dataSource: relational
        statement: SELECT id, name FROM users WHERE last_login < $1 LIMIT 500
        parameters:
          - {name: since, type: date, required: true}
        access: {requiresAuth: true, roles: [admin]}
"""

import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml
from pydantic import ValidationError

from queryengine import errors
from queryengine.domain.query.validator import QueryValidator, describe_validation_error
from queryengine.infrastructure.cache.query_cache import QueryCache
from queryengine.models import DataSource, QueryDefinition

logger = logging.getLogger(__name__)

DefinitionInput = Union[QueryDefinition, Mapping[str, Any]]


class QueryDefinitionRegistry:
    """Thread-safe in-memory store of query definitions keyed by id."""

    def __init__(self, validator: Optional[QueryValidator] = None, cache: Optional[QueryCache] = None):
        self.validator = validator or QueryValidator()
        self.cache = cache
        self._definitions: Dict[str, QueryDefinition] = {}
        self._lock = threading.Lock()

    def register(self, definition: DefinitionInput) -> QueryDefinition:
        parsed = self._validated(definition)
        with self._lock:
            if parsed.id in self._definitions:
                raise errors.definition_exists(parsed.id)
            self._definitions[parsed.id] = parsed
        logger.info(f"Registered query definition {parsed.id} v{parsed.version}")
        return parsed

    def replace(self, definition: DefinitionInput) -> QueryDefinition:
        parsed = self._validated(definition)
        with self._lock:
            if parsed.id not in self._definitions:
                raise errors.definition_not_found(parsed.id)
            self._definitions[parsed.id] = parsed
        self._invalidate(parsed.id)
        logger.info(f"Replaced query definition {parsed.id} v{parsed.version}")
        return parsed

    def remove(self, query_id: str) -> None:
        with self._lock:
            if query_id not in self._definitions:
                raise errors.definition_not_found(query_id)
            del self._definitions[query_id]
        self._invalidate(query_id)
        logger.info(f"Removed query definition {query_id}")

    def get(self, query_id: str) -> QueryDefinition:
        with self._lock:
            definition = self._definitions.get(query_id)
        if definition is None:
            raise errors.definition_not_found(query_id)
        return definition

    def __contains__(self, query_id: str) -> bool:
        with self._lock:
            return query_id in self._definitions

    def __len__(self) -> int:
        with self._lock:
            return len(self._definitions)

    def list(
        self,
        data_source: Optional[Union[DataSource, str]] = None,
        search: Optional[str] = None,
    ) -> List[QueryDefinition]:
        """Definitions sorted by id, optionally filtered by data source and a name/id/description search."""
        with self._lock:
            definitions = sorted(self._definitions.values(), key=lambda d: d.id)

        if data_source is not None:
            source = DataSource(data_source)
            definitions = [d for d in definitions if d.data_source == source]
        if search:
            needle = search.lower()
            definitions = [
                d for d in definitions
                if needle in d.id.lower()
                or needle in (d.name or "").lower()
                or needle in (d.description or "").lower()
            ]
        return definitions

    def load_file(self, path: Union[str, Path]) -> List[QueryDefinition]:
        """Register every definition in a YAML/JSON file. Existing ids are replaced."""
        path = Path(path)
        with open(path, "r", encoding="utf-8") as f:
            document = yaml.safe_load(f)

        if isinstance(document, dict):
            document = document.get("queries", [])
        if not isinstance(document, list):
            raise errors.QueryEngineError(
                message=f"Definition file {path} must hold a list of queries",
                code=errors.ErrorCode.ERR_DEFINITION_FILE_INVALID,
                status_code=400,
            )

        loaded = []
        for entry in document:
            parsed = self._validated(entry)
            if parsed.id in self:
                loaded.append(self.replace(parsed))
            else:
                loaded.append(self.register(parsed))
        logger.info(f"Loaded {len(loaded)} query definitions from {path}")
        return loaded

    def _validated(self, definition: DefinitionInput) -> QueryDefinition:
        if not isinstance(definition, QueryDefinition):
            try:
                definition = QueryDefinition.model_validate(dict(definition))
            except ValidationError as e:
                raise errors.validation_failed(describe_validation_error(e))
        report = self.validator.validate_definition(definition)
        if not report.valid:
            raise errors.validation_failed(report.errors, report.warnings, query_id=definition.id)
        return definition

    def _invalidate(self, query_id: str) -> None:
        if self.cache is not None:
            self.cache.clear(query_id)
