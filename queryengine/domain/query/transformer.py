"""
Result transformation.

Reshapes rows fetched from a backend according to a definition's
``resultMapping``:

    1. field mappings: coerce, transform and rename mapped fields;
       unmapped fields pass through under their original name
    2. post-processing filter (in memory, WHERE operator set)
    3. multi-key sort, None sorting lowest
    4. hard truncation to the post-processing limit

A failing conversion or transform keeps the field's original value and
never drops the row. A malformed mapping raises.
"""

import logging
import re
from datetime import datetime, timezone
from functools import cmp_to_key
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from queryengine.domain.query import coercion
from queryengine.models import FieldMapping, FilterCondition, ResultMapping, Row, SortCondition

logger = logging.getLogger(__name__)

FILETIME_EPOCH_OFFSET_MS = 11644473600000
FILETIME_NEVER = 9223372036854775807
TRUNCATE_LENGTH = 100
BYTES_PER_MB = 1024 * 1024

UAC_FLAGS = {
    "disabled": 0x0002,
    "lockedOut": 0x0010,
    "passwordNotRequired": 0x0020,
    "passwordCantChange": 0x0040,
    "passwordNeverExpires": 0x10000,
    "accountLocked": 0x0010,
}

DATE_FORMATS = {
    "YYYY-MM-DD": "%Y-%m-%d",
    "DD/MM/YYYY": "%d/%m/%Y",
    "MM/DD/YYYY": "%m/%d/%Y",
    "UTC": "%a, %d %b %Y %H:%M:%S GMT",
}


def to_iso(moment: datetime) -> str:
    """ISO-8601 in UTC with millisecond precision and a Z suffix."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def format_date(moment: datetime, fmt: Optional[str]) -> str:
    pattern = DATE_FORMATS.get(fmt or "")
    if pattern is None:
        return to_iso(moment)
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.strftime(pattern)


# =============================================================================
# Named transforms
# =============================================================================

def file_time_to_date(value: Any) -> Optional[str]:
    ticks = int(value)
    if ticks == 0 or ticks == FILETIME_NEVER:
        return None
    epoch_ms = ticks / 10000 - FILETIME_EPOCH_OFFSET_MS
    return to_iso(datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc))


def dn_to_name(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    match = re.match(r"^CN=([^,]+)", value, re.IGNORECASE)
    return match.group(1) if match else value


def user_account_control_to_flags(value: Any) -> Dict[str, Any]:
    flags_value = int(value)
    flags = {name: bool(flags_value & bit) for name, bit in UAC_FLAGS.items()}
    if flags["disabled"]:
        status = "Disabled"
    elif flags["lockedOut"]:
        status = "Locked"
    else:
        status = "Active"
    return {"value": flags_value, "flags": flags, "status": status}


def bytes_to_mb(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return round(value / BYTES_PER_MB, 2)


def ms_to_seconds(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return round(value / 1000, 2)


def uppercase_first(value: Any) -> Any:
    if not isinstance(value, str) or not value:
        return value
    return value[0].upper() + value[1:].lower()


def truncate(value: Any) -> Any:
    if isinstance(value, str) and len(value) > TRUNCATE_LENGTH:
        return value[:TRUNCATE_LENGTH] + "..."
    return value


def anonymize(value: Any, field_name: str) -> Any:
    if value is None or value == "":
        return value
    value = str(value)
    lowered = field_name.lower()
    if ("email" in lowered or "mail" in lowered) and "@" in value:
        local, domain = value.split("@", 1)
        return f"{local[:1]}{'*' * max(len(local) - 1, 0)}@{domain}"
    if "phone" in lowered or "tel" in lowered:
        digits_seen = 0
        masked = []
        for char in value:
            if char.isdigit():
                masked.append(char if digits_seen < 3 else "*")
                digits_seen += 1
            else:
                masked.append(char)
        return "".join(masked)
    if len(value) <= 2:
        return "*" * len(value)
    return value[0] + "*" * (len(value) - 2) + value[-1]


# =============================================================================
# Transformer
# =============================================================================

class ResultTransformer:
    """Applies a ResultMapping to rows."""

    def __init__(self):
        self._transforms: Dict[str, Callable[[Any, str], Any]] = {
            "fileTimeToDate": lambda v, f: file_time_to_date(v),
            "dnToName": lambda v, f: dn_to_name(v),
            "userAccountControlToFlags": lambda v, f: user_account_control_to_flags(v),
            "bytesToMB": lambda v, f: bytes_to_mb(v),
            "msToSeconds": lambda v, f: ms_to_seconds(v),
            "uppercaseFirst": lambda v, f: uppercase_first(v),
            "truncate": lambda v, f: truncate(v),
            "anonymize": anonymize,
        }

    def transform_results(
        self,
        rows: List[Row],
        mapping: Union[ResultMapping, Mapping[str, Any], None],
    ) -> List[Row]:
        if mapping is None:
            return list(rows)
        if not isinstance(mapping, ResultMapping):
            mapping = ResultMapping.model_validate(mapping)

        result = [self._map_row(row, mapping.field_mappings) for row in rows]

        post = mapping.post_process
        if post is not None:
            if post.filter:
                result = [row for row in result if all(self.matches(row, c) for c in post.filter)]
            if post.sort:
                result = self.sort_rows(result, post.sort)
            if post.limit is not None and post.limit > 0:
                result = result[:post.limit]
        return result

    # -------------------------------------------------------------------------
    # Field mapping
    # -------------------------------------------------------------------------

    def _map_row(self, row: Row, field_mappings: Dict[str, FieldMapping]) -> Row:
        if not field_mappings:
            return dict(row)
        mapped: Row = {}
        for source, value in row.items():
            field_mapping = field_mappings.get(source)
            if field_mapping is None:
                mapped[source] = value
                continue
            target = field_mapping.target_field or source
            mapped[target] = self._map_value(source, value, field_mapping)
        return mapped

    def _map_value(self, source: str, value: Any, field_mapping: FieldMapping) -> Any:
        original = value
        try:
            if field_mapping.type and value is not None:
                value = coercion.coerce(value, field_mapping.type)
                if isinstance(value, datetime):
                    value = format_date(value, field_mapping.format)
        except ValueError as e:
            logger.debug(f"Conversion of field {source} to {field_mapping.type} failed: {e}")
            return original

        if field_mapping.transform and value is not None:
            return self.apply_transform(field_mapping.transform, value, source, fallback=original)
        return value

    def apply_transform(self, name: str, value: Any, field_name: str = "", fallback: Any = None) -> Any:
        handler = self._transforms.get(name)
        if handler is None:
            logger.warning(f"Unknown field transformation: {name}")
            return value
        try:
            return handler(value, field_name)
        except Exception as e:
            logger.warning(f"Field transformation {name} failed for {field_name}: {e}")
            return fallback if fallback is not None else value

    # -------------------------------------------------------------------------
    # Post-processing
    # -------------------------------------------------------------------------

    def matches(self, row: Row, condition: FilterCondition) -> bool:
        actual = row.get(condition.field)
        expected = condition.value
        operator = condition.operator
        try:
            if operator == "eq":
                return actual == expected
            if operator == "ne":
                return actual != expected
            if operator == "gt":
                return actual is not None and actual > expected
            if operator == "gte":
                return actual is not None and actual >= expected
            if operator == "lt":
                return actual is not None and actual < expected
            if operator == "lte":
                return actual is not None and actual <= expected
            if operator == "in":
                return isinstance(expected, (list, tuple)) and actual in expected
            if operator == "nin":
                return isinstance(expected, (list, tuple)) and actual not in expected
            if operator in ("like", "ilike"):
                if actual is None or expected is None:
                    return False
                needle = coercion.to_string(expected).strip("%").lower()
                return needle in coercion.to_string(actual).lower()
            if operator == "is_null":
                return actual is None
            if operator == "is_not_null":
                return actual is not None
            if operator == "isEmpty":
                return actual is None or actual == ""
            if operator == "isNotEmpty":
                return actual is not None and actual != ""
        except TypeError:
            return False
        logger.warning(f"Unknown filter operator: {operator}")
        return True

    def sort_rows(self, rows: List[Row], sort: List[SortCondition]) -> List[Row]:
        def compare(left: Row, right: Row) -> int:
            for condition in sort:
                outcome = _compare_values(left.get(condition.field), right.get(condition.field))
                if outcome:
                    return -outcome if condition.direction == "desc" else outcome
            return 0

        return sorted(rows, key=cmp_to_key(compare))


def _compare_values(left: Any, right: Any) -> int:
    if left is None and right is None:
        return 0
    if left is None:
        return -1
    if right is None:
        return 1
    try:
        return (left > right) - (left < right)
    except TypeError:
        left_text, right_text = str(left), str(right)
        return (left_text > right_text) - (left_text < right_text)
