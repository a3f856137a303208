"""
Query Builder

Assembles fully parameterized relational statements from fluent calls.
Values are never interpolated into the statement text: every value becomes
a positional ``$n`` placeholder bound by the relational executor.

Usage:
    built = (
        QueryBuilder()
        .select(["id", "name", "COUNT(*) AS total"])
        .from_("users")
        .where([{"field": "status", "operator": "eq", "value": "active"}])
        .group_by(["id", "name"])
        .order_by("name")
        .limit(50)
        .build()
    )
    built.sql         # SELECT "id", "name", COUNT(*) AS total\nFROM "users"\n...
    built.parameters  # ["active"]

Identifier safety:
    Plain identifiers are escaped: everything outside [A-Za-z0-9_] is stripped
    from each dotted segment and each segment is wrapped in double quotes.
    Fields matching the aggregate / arithmetic / alias whitelist are emitted
    verbatim. That whitelist is the builder's trust boundary: its patterns
    admit only identifiers, numbers and a fixed set of operators.
"""

import copy
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

from queryengine import errors
from queryengine.models import WhereCondition

logger = logging.getLogger(__name__)

_IDENT = r"[A-Za-z_][A-Za-z0-9_]*"
_DOTTED = r"[A-Za-z_][A-Za-z0-9_.]*"
_ALIAS = rf"(\s+AS\s+{_IDENT})?"

AGGREGATE_PATTERN = re.compile(
    rf"^(COUNT|SUM|AVG|MIN|MAX)\s*\(\s*(DISTINCT\s+)?(\*|{_DOTTED})\s*\){_ALIAS}$", re.IGNORECASE
)
ARITHMETIC_PATTERN = re.compile(
    rf"^{_DOTTED}(\s*[-+*/]\s*({_DOTTED}|\d+(\.\d+)?))+{_ALIAS}$", re.IGNORECASE
)
ALIAS_PATTERN = re.compile(rf"^{_DOTTED}\s+AS\s+{_IDENT}$", re.IGNORECASE)
IDENTIFIER_PATTERN = re.compile(rf"^{_DOTTED}$")
TABLE_PATTERN = re.compile(rf"^{_IDENT}$")
JOIN_CONDITION_PATTERN = re.compile(r"^[a-zA-Z0-9_.\"'\s=<>!]+$")

MAX_LIMIT = 10000
JOIN_TYPES = ("INNER", "LEFT", "RIGHT", "FULL")
SORT_DIRECTIONS = ("asc", "desc")

COMPARISON_OPERATORS = {
    "eq": "=",
    "ne": "!=",
    "gt": ">",
    "gte": ">=",
    "lt": "<",
    "lte": "<=",
    "like": "LIKE",
    "ilike": "ILIKE",
}

ConditionInput = Union[WhereCondition, Dict[str, Any]]


@dataclass
class BuiltQuery:
    sql: str
    parameters: List[Any] = field(default_factory=list)

    @property
    def parameter_count(self) -> int:
        return len(self.parameters)


def escape_identifier(name: str) -> str:
    """
    Escape a bare or dotted identifier.

    Strips every character outside [A-Za-z0-9_] from each segment and quotes
    it. A segment that ends up empty is rejected.
    """
    segments = []
    for segment in str(name).split("."):
        cleaned = re.sub(r"[^A-Za-z0-9_]", "", segment)
        if not cleaned:
            raise errors.builder_invalid(f"Invalid identifier: {name}", identifier=name)
        segments.append(f'"{cleaned}"')
    return ".".join(segments)


def is_whitelisted_expression(expression: str) -> bool:
    text = expression.strip()
    return bool(
        AGGREGATE_PATTERN.match(text)
        or ARITHMETIC_PATTERN.match(text)
        or ALIAS_PATTERN.match(text)
    )


class QueryBuilder:
    """
    Fluent builder for a single SELECT statement.

    Clauses are emitted in a fixed order regardless of call order:
    SELECT, FROM, JOIN, WHERE, GROUP BY, HAVING, ORDER BY, LIMIT/OFFSET.
    Placeholders are numbered at build() time, WHERE values first.
    """

    def __init__(self):
        self.reset()

    @classmethod
    def create(cls) -> "QueryBuilder":
        return cls()

    def reset(self) -> "QueryBuilder":
        self._fields: List[str] = []
        self._table: Optional[str] = None
        self._joins: List[str] = []
        self._where: List[WhereCondition] = []
        self._group_by: List[str] = []
        self._having: List[WhereCondition] = []
        self._order_by: Optional[str] = None
        self._limit: Optional[int] = None
        self._offset: int = 0
        return self

    def clone(self) -> "QueryBuilder":
        return copy.deepcopy(self)

    # -------------------------------------------------------------------------
    # Clauses
    # -------------------------------------------------------------------------

    def select(self, fields: Union[str, Sequence[str]]) -> "QueryBuilder":
        if isinstance(fields, str):
            fields = [fields]
        self._fields = [self._render_field(f) for f in fields]
        return self

    def from_(self, table: str, alias: Optional[str] = None) -> "QueryBuilder":
        self._table = self._render_table(table, alias)
        return self

    def join(
        self,
        table: str,
        condition: str,
        join_type: str = "INNER",
        alias: Optional[str] = None,
    ) -> "QueryBuilder":
        kind = str(join_type).upper()
        if kind not in JOIN_TYPES:
            raise errors.builder_invalid(f"Invalid join type: {join_type}")
        if not condition or not JOIN_CONDITION_PATTERN.match(condition):
            raise errors.builder_invalid(f"Invalid join condition: {condition}")
        self._joins.append(f"{kind} JOIN {self._render_table(table, alias)} ON {condition.strip()}")
        return self

    def where(self, conditions: Union[ConditionInput, Sequence[ConditionInput]]) -> "QueryBuilder":
        self._where.extend(self._coerce_conditions(conditions))
        return self

    def group_by(self, fields: Union[str, Sequence[str]]) -> "QueryBuilder":
        if isinstance(fields, str):
            fields = [fields]
        self._group_by = [self._render_field(f) for f in fields]
        return self

    def having(self, conditions: Union[ConditionInput, Sequence[ConditionInput]]) -> "QueryBuilder":
        self._having.extend(self._coerce_conditions(conditions))
        return self

    def order_by(self, field_name: str, direction: str = "asc") -> "QueryBuilder":
        normalized = str(direction).lower()
        if normalized not in SORT_DIRECTIONS:
            raise errors.builder_invalid(f"Invalid sort direction: {direction}")
        self._order_by = f"{self._render_field(field_name)} {normalized.upper()}"
        return self

    def limit(self, count: int) -> "QueryBuilder":
        if isinstance(count, bool) or not isinstance(count, int):
            raise errors.builder_invalid(f"Limit must be an integer, got {count!r}")
        if count > 0:
            if count > MAX_LIMIT:
                logger.debug(f"Limit {count} clamped to {MAX_LIMIT}")
            self._limit = min(count, MAX_LIMIT)
        return self

    def offset(self, count: int) -> "QueryBuilder":
        if isinstance(count, bool) or not isinstance(count, int):
            raise errors.builder_invalid(f"Offset must be an integer, got {count!r}")
        if count >= 0:
            self._offset = count
        return self

    # -------------------------------------------------------------------------
    # Build
    # -------------------------------------------------------------------------

    def build(self) -> BuiltQuery:
        if not self._fields:
            raise errors.builder_invalid("SELECT fields are required")
        if not self._table:
            raise errors.builder_invalid("FROM table is required")
        if self._having and not self._group_by:
            raise errors.builder_invalid("HAVING clause requires GROUP BY")

        parameters: List[Any] = []
        clauses = [f"SELECT {', '.join(self._fields)}", f"FROM {self._table}"]
        clauses.extend(self._joins)

        if self._where:
            clauses.append(f"WHERE {self._render_conditions(self._where, parameters)}")
        if self._group_by:
            clauses.append(f"GROUP BY {', '.join(self._group_by)}")
        if self._having:
            clauses.append(f"HAVING {self._render_conditions(self._having, parameters)}")
        if self._order_by:
            clauses.append(f"ORDER BY {self._order_by}")
        if self._limit is not None:
            clauses.append(f"LIMIT {self._limit}")
        if self._offset > 0:
            clauses.append(f"OFFSET {self._offset}")

        return BuiltQuery(sql="\n".join(clauses), parameters=parameters)

    @classmethod
    def build_select(
        cls,
        fields: Sequence[str],
        table: str,
        where: Optional[Sequence[ConditionInput]] = None,
        order_by: Optional[Union[str, Dict[str, str]]] = None,
        limit: Optional[int] = None,
    ) -> BuiltQuery:
        """One-shot SELECT for the common case."""
        builder = cls().select(list(fields)).from_(table)
        if where:
            builder.where(where)
        if order_by:
            if isinstance(order_by, dict):
                builder.order_by(order_by["field"], order_by.get("direction", "asc"))
            else:
                builder.order_by(order_by)
        if limit is not None:
            builder.limit(limit)
        return builder.build()

    # -------------------------------------------------------------------------
    # Rendering helpers
    # -------------------------------------------------------------------------

    def _render_field(self, expression: str) -> str:
        if not isinstance(expression, str):
            raise errors.builder_invalid(f"Invalid field expression: {expression!r}")
        text = expression.strip()
        if text == "*":
            return text
        if is_whitelisted_expression(text):
            return text
        if IDENTIFIER_PATTERN.match(text):
            return escape_identifier(text)
        raise errors.builder_invalid(f"Invalid field expression: {expression}", field=expression)

    def _render_table(self, table: str, alias: Optional[str]) -> str:
        if not isinstance(table, str) or not TABLE_PATTERN.match(table):
            raise errors.builder_invalid(f"Invalid table name: {table}", table=table)
        rendered = escape_identifier(table)
        if alias:
            if not TABLE_PATTERN.match(alias):
                raise errors.builder_invalid(f"Invalid table alias: {alias}")
            rendered += f" AS {escape_identifier(alias)}"
        return rendered

    def _coerce_conditions(self, conditions) -> List[WhereCondition]:
        if isinstance(conditions, (WhereCondition, dict)):
            conditions = [conditions]
        coerced = []
        for condition in conditions:
            if isinstance(condition, WhereCondition):
                coerced.append(condition)
                continue
            try:
                coerced.append(WhereCondition.model_validate(condition))
            except ValueError as e:
                raise errors.builder_invalid(f"Invalid condition: {e}")
        return coerced

    def _render_conditions(self, conditions: List[WhereCondition], parameters: List[Any]) -> str:
        parts: List[str] = []
        for index, condition in enumerate(conditions):
            fragment = self._render_condition(condition, parameters)
            if index == 0:
                parts.append(fragment)
            else:
                parts.append(f"{condition.logic or 'AND'} {fragment}")
        return " ".join(parts)

    def _render_condition(self, condition: WhereCondition, parameters: List[Any]) -> str:
        column = self._render_field(condition.field)
        operator = condition.operator

        if operator in COMPARISON_OPERATORS:
            parameters.append(condition.value)
            return f"{column} {COMPARISON_OPERATORS[operator]} ${len(parameters)}"

        if operator in ("in", "nin"):
            values = condition.value
            if not isinstance(values, (list, tuple)):
                raise errors.builder_invalid("IN operator requires array value", field=condition.field)
            if not values:
                raise errors.builder_invalid("IN operator requires at least one value", field=condition.field)
            placeholders: List[str] = []
            for value in values:
                parameters.append(value)
                placeholders.append(f"${len(parameters)}")
            keyword = "IN" if operator == "in" else "NOT IN"
            return f"{column} {keyword} ({', '.join(placeholders)})"

        if operator == "is_null":
            return f"{column} IS NULL"
        if operator == "is_not_null":
            return f"{column} IS NOT NULL"
        if operator == "isEmpty":
            return f"({column} IS NULL OR {column} = '')"
        if operator == "isNotEmpty":
            return f"({column} IS NOT NULL AND {column} != '')"

        raise errors.builder_invalid(f"Unsupported operator: {operator}")
