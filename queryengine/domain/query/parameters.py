"""
Parameter processing.

Turns a caller's raw parameter bag into the positional argument list a
relational statement binds, in schema-declaration order. Processing FAILS
FAST: the first missing, unconvertible or out-of-bounds value raises a
ParameterError naming the parameter.

Per parameter:
    1. Missing value -> declared default, else error when required, else None
    2. Coerce to the declared type
    3. Check min / max / pattern / enum
    4. Apply the named transform, if any (may change the type)
"""

import hashlib
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from queryengine import errors
from queryengine.crypto import ValueCipher
from queryengine.domain.query import coercion
from queryengine.models import ParameterDefinition, QueryDefinition

logger = logging.getLogger(__name__)

# 1601-01-01 -> 1970-01-01 in milliseconds
FILETIME_EPOCH_OFFSET_MS = 11644473600000
MAX_PASSWORD_AGE_DAYS = 42

PLACEHOLDER_TOKEN = re.compile(r"\{\{\s*([A-Za-z0-9_]+)\s*\}\}")

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ParameterProcessor:
    """Coerces, validates, defaults and transforms parameter bags."""

    def __init__(self, cipher: Optional[ValueCipher] = None, clock: Optional[Clock] = None):
        self._cipher = cipher
        self._clock = clock or _utcnow
        self._transforms: Dict[str, Callable[[Any], Any]] = {
            "daysToTimestamp": self._days_to_timestamp,
            "hoursToTimestamp": self._hours_to_timestamp,
            "daysToPasswordExpiry": self._days_to_password_expiry,
            "daysToFileTime": self._days_to_file_time,
            "encrypt": self._encrypt,
            "hash": self._hash,
        }

    def process_parameters(
        self,
        schema: Sequence[ParameterDefinition],
        parameters: Optional[Dict[str, Any]],
    ) -> List[Any]:
        parameters = parameters or {}
        args: List[Any] = []
        for definition in schema:
            args.append(self._process_one(definition, parameters.get(definition.name)))
        logger.debug(f"Processed {len(args)} parameters")
        return args

    def process_for(self, definition: QueryDefinition, parameters: Optional[Dict[str, Any]]) -> List[Any]:
        return self.process_parameters(definition.parameter_list(), parameters)

    def _process_one(self, definition: ParameterDefinition, value: Any) -> Any:
        name = definition.name

        if value is None:
            if definition.has_default:
                value = definition.default
            elif definition.required:
                raise errors.parameter_invalid(name, f"Required parameter missing: {name}")
            if value is None:
                return None

        try:
            value = coercion.coerce(value, definition.type)
        except ValueError as e:
            if definition.type == "number":
                raise errors.parameter_invalid(name, f"Cannot convert {value} to number for parameter {name}")
            raise errors.parameter_invalid(name, f"Type conversion failed for parameter {name}: {e}")

        violation = coercion.rule_violation(name, value, definition.validation)
        if violation:
            raise errors.parameter_invalid(name, violation)

        if definition.transform:
            value = self.apply_transform(name, definition.transform, value)
        return value

    def apply_transform(self, name: str, transform: str, value: Any) -> Any:
        handler = self._transforms.get(transform)
        if handler is None:
            logger.warning(f"Unknown parameter transform '{transform}' for {name}; value passed through")
            return value
        try:
            return handler(value)
        except Exception as e:
            raise errors.parameter_invalid(name, f"Parameter transformation failed for {name}: {e}")

    # -------------------------------------------------------------------------
    # Transforms
    # -------------------------------------------------------------------------

    def _days_to_timestamp(self, value: Any) -> int:
        moment = self._clock() - timedelta(days=coercion.to_number(value))
        return int(moment.timestamp())

    def _hours_to_timestamp(self, value: Any) -> int:
        moment = self._clock() - timedelta(hours=coercion.to_number(value))
        return int(moment.timestamp())

    def _days_to_password_expiry(self, value: Any) -> int:
        # a password set (42 - days) days ago expires within the next `days` days
        days = coercion.to_number(value)
        moment = self._clock() + timedelta(days=days - MAX_PASSWORD_AGE_DAYS)
        return int(moment.timestamp())

    def _days_to_file_time(self, value: Any) -> str:
        moment = self._clock() - timedelta(days=coercion.to_number(value))
        epoch_ms = int(moment.timestamp() * 1000)
        return str((epoch_ms + FILETIME_EPOCH_OFFSET_MS) * 10000)

    def _encrypt(self, value: Any) -> str:
        if self._cipher is None:
            self._cipher = ValueCipher()
        return self._cipher.encrypt(value)

    def _hash(self, value: Any) -> str:
        return hashlib.sha256(coercion.to_string(value).encode("utf-8")).hexdigest()

    # -------------------------------------------------------------------------
    # Template helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def replace_parameter_placeholders(template: str, schema: Sequence[ParameterDefinition]) -> str:
        """Rewrite ``{{name}}`` tokens into ``$n`` positions from the schema order."""
        positions = {param.name: index + 1 for index, param in enumerate(schema)}

        def _replace(match):
            position = positions.get(match.group(1))
            return f"${position}" if position else match.group(0)

        return PLACEHOLDER_TOKEN.sub(_replace, template)
