"""
Type coercion shared by parameter processing (inbound) and result
transformation (outbound).

Every function raises ValueError when the value cannot be represented as the
target type; callers decide whether that is fatal.
"""

import json
import math
import re
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional


def to_string(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def to_number(value: Any):
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        if isinstance(value, float) and math.isnan(value):
            raise ValueError(f"Cannot convert {value!r} to number")
        return value
    if isinstance(value, str):
        text = value.strip()
        if not text:
            raise ValueError(f"Cannot convert {value!r} to number")
        try:
            return int(text)
        except ValueError:
            pass
        try:
            number = float(text)
        except ValueError:
            raise ValueError(f"Cannot convert {value!r} to number")
        if math.isnan(number):
            raise ValueError(f"Cannot convert {value!r} to number")
        return number
    raise ValueError(f"Cannot convert {value!r} to number")


def to_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "1"):
            return True
        if lowered in ("false", "0"):
            return False
        raise ValueError(f"Cannot convert {value!r} to boolean")
    if isinstance(value, (int, float)):
        return value != 0
    raise ValueError(f"Cannot convert {value!r} to boolean")


def to_date(value: Any) -> datetime:
    """Dates pass through; strings are ISO-8601; numbers are epoch milliseconds."""
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, bool):
        raise ValueError(f"Cannot convert {value!r} to date")
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            raise ValueError(f"Cannot convert {value!r} to date")
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return datetime.fromisoformat(text)
        except ValueError:
            raise ValueError(f"Cannot convert {value!r} to date")
    raise ValueError(f"Cannot convert {value!r} to date")


def to_array(value: Any) -> List[Any]:
    if isinstance(value, (list, tuple)):
        return list(value)
    if isinstance(value, str):
        text = value.strip()
        if text.startswith("["):
            try:
                parsed = json.loads(text)
            except ValueError:
                parsed = None
            if isinstance(parsed, list):
                return parsed
        if "," in value:
            return [part.strip() for part in value.split(",")]
    return [value]


def to_object(value: Any) -> Dict[str, Any]:
    if isinstance(value, dict):
        return value
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except ValueError:
            raise ValueError(f"Cannot convert {value!r} to object")
        if isinstance(parsed, dict):
            return parsed
    raise ValueError(f"Cannot convert {value!r} to object")


COERCERS: Dict[str, Callable[[Any], Any]] = {
    "string": to_string,
    "number": to_number,
    "boolean": to_boolean,
    "date": to_date,
    "array": to_array,
    "object": to_object,
}


def coerce(value: Any, type_name: str) -> Any:
    """Coerce value to a parameter type. Unknown type names pass the value through."""
    coercer = COERCERS.get(type_name)
    if coercer is None:
        return value
    return coercer(value)


# =============================================================================
# Validation rules
# =============================================================================

TYPE_MESSAGES = {
    "string": "must be a string",
    "number": "must be a valid number",
    "boolean": "must be a boolean",
    "date": "must be a valid date",
    "array": "must be an array",
    "object": "must be an object",
}


def _format_bound(bound: float) -> str:
    if float(bound).is_integer():
        return str(int(bound))
    return str(bound)


def rule_violation(name: str, value: Any, validation) -> Optional[str]:
    """
    Check a coerced value against min/max/pattern/enum rules.

    Returns the first violation message, or None. Bounds apply to numbers,
    and to string length for strings. Enum membership compares the value as
    a whole, so an array is checked as one value rather than per element.
    """
    if validation is None or value is None:
        return None

    is_number = isinstance(value, (int, float)) and not isinstance(value, bool)

    if is_number:
        if validation.min is not None and value < validation.min:
            return f"Parameter {name} must be >= {_format_bound(validation.min)}"
        if validation.max is not None and value > validation.max:
            return f"Parameter {name} must be <= {_format_bound(validation.max)}"

    if isinstance(value, str):
        if validation.min is not None and len(value) < validation.min:
            return f"Parameter {name} must be at least {_format_bound(validation.min)} characters"
        if validation.max is not None and len(value) > validation.max:
            return f"Parameter {name} must be at most {_format_bound(validation.max)} characters"
        if validation.pattern:
            try:
                matched = re.search(validation.pattern, value)
            except re.error:
                return f"Parameter {name} has an invalid validation pattern"
            if not matched:
                return f"Parameter {name} does not match required pattern"

    if validation.enum is not None and value not in validation.enum:
        allowed = ", ".join(to_string(option) for option in validation.enum)
        return f"Parameter {name} must be one of: {allowed}"

    return None
