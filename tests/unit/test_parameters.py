"""
Tests for parameter processing and the shared coercion helpers.
"""

import re
from datetime import datetime, timedelta, timezone

import pytest

from queryengine.crypto import ValueCipher
from queryengine.domain.query import coercion
from queryengine.domain.query.parameters import (
    FILETIME_EPOCH_OFFSET_MS,
    ParameterProcessor,
)
from queryengine.errors import ErrorCode, ParameterError
from queryengine.models import ParameterDefinition, QueryDefinition


def schema(*params):
    return [ParameterDefinition.model_validate(p) for p in params]


@pytest.fixture
def processor(fixed_now):
    return ParameterProcessor(cipher=ValueCipher("unit-test-passphrase"), clock=lambda: fixed_now)


class TestProcessing:
    """Tests for turning a parameter bag into positional arguments."""

    def test_string_number_is_coerced(self, processor):
        """Test "1" becomes 1 for a number parameter."""
        args = processor.process_parameters(
            schema({"name": "id", "type": "number", "required": True}), {"id": "1"}
        )
        assert args == [1]
        assert isinstance(args[0], int)

    def test_arguments_follow_schema_order(self, processor):
        args = processor.process_parameters(
            schema({"name": "a"}, {"name": "b", "type": "boolean"}, {"name": "c", "type": "number"}),
            {"c": "2.5", "a": 7, "b": "false"},
        )
        assert args == ["7", False, 2.5]

    def test_optional_missing_is_none(self, processor):
        assert processor.process_parameters(schema({"name": "a"}), {}) == [None]

    def test_default_used_when_missing(self, processor):
        args = processor.process_parameters(
            schema({"name": "days", "type": "number", "required": True, "default": "30"}), {}
        )
        assert args == [30]

    def test_explicit_null_default(self, processor):
        params = schema({"name": "a", "required": True, "default": None})
        assert params[0].has_default is True
        assert processor.process_parameters(params, {}) == [None]

    def test_required_missing_raises(self, processor):
        with pytest.raises(ParameterError) as exc:
            processor.process_parameters(schema({"name": "id", "required": True}), {})
        assert exc.value.message == "Required parameter missing: id"
        assert exc.value.parameter == "id"
        assert exc.value.code == ErrorCode.ERR_PARAMETER_INVALID

    def test_number_conversion_error_message(self, processor):
        with pytest.raises(ParameterError, match="Cannot convert abc to number for parameter id"):
            processor.process_parameters(schema({"name": "id", "type": "number"}), {"id": "abc"})

    def test_other_conversion_error_message(self, processor):
        with pytest.raises(ParameterError, match="Type conversion failed for parameter since"):
            processor.process_parameters(schema({"name": "since", "type": "date"}), {"since": "yesterday"})

    def test_validation_rules_enforced(self, processor):
        with pytest.raises(ParameterError, match="must be <= 10"):
            processor.process_parameters(
                schema({"name": "n", "type": "number", "validation": {"max": 10}}), {"n": 11}
            )

    def test_fails_fast_on_first_problem(self, processor):
        with pytest.raises(ParameterError) as exc:
            processor.process_parameters(
                schema({"name": "a", "required": True}, {"name": "b", "required": True}), {}
            )
        assert exc.value.parameter == "a"

    def test_process_for_definition(self, processor, relational_definition):
        definition = QueryDefinition.model_validate(relational_definition)
        assert processor.process_for(definition, {"id": "42"}) == [42]


class TestTransforms:
    """Tests for named parameter transforms."""

    def test_days_to_file_time_is_digits(self, processor):
        args = processor.process_parameters(
            schema({"name": "days", "type": "number", "transform": "daysToFileTime"}), {"days": 30}
        )
        assert re.match(r"^\d+$", args[0])

    def test_days_to_file_time_value(self, processor, fixed_now):
        moment = fixed_now - timedelta(days=30)
        expected = str((int(moment.timestamp() * 1000) + FILETIME_EPOCH_OFFSET_MS) * 10000)
        assert processor.apply_transform("days", "daysToFileTime", 30) == expected

    def test_days_to_timestamp(self, processor, fixed_now):
        expected = int((fixed_now - timedelta(days=7)).timestamp())
        assert processor.apply_transform("days", "daysToTimestamp", 7) == expected

    def test_hours_to_timestamp(self, processor, fixed_now):
        expected = int((fixed_now - timedelta(hours=6)).timestamp())
        assert processor.apply_transform("hours", "hoursToTimestamp", 6) == expected

    def test_days_to_password_expiry(self, processor, fixed_now):
        expected = int((fixed_now + timedelta(days=14 - 42)).timestamp())
        assert processor.apply_transform("days", "daysToPasswordExpiry", 14) == expected

    def test_hash(self, processor):
        digest = processor.apply_transform("email", "hash", "a@b.c")
        assert re.match(r"^[0-9a-f]{64}$", digest)

    def test_encrypt_round_trips_through_cipher(self):
        cipher = ValueCipher("unit-test-passphrase")
        processor = ParameterProcessor(cipher=cipher)
        token = processor.apply_transform("secret", "encrypt", "hunter2")
        assert token != "hunter2"
        assert cipher.decrypt(token) == "hunter2"

    def test_unknown_transform_passes_value_through(self, processor):
        assert processor.apply_transform("x", "rot13", "abc") == "abc"

    def test_transform_failure_raises(self, processor):
        with pytest.raises(ParameterError, match="Parameter transformation failed for days"):
            processor.apply_transform("days", "daysToTimestamp", "soon")


class TestPlaceholders:
    """Tests for {{name}} to $n rewriting."""

    def test_tokens_become_positions(self):
        params = schema({"name": "a"}, {"name": "b"})
        sql = ParameterProcessor.replace_parameter_placeholders(
            "SELECT * FROM t WHERE x = {{b}} AND y = {{ a }} AND z = {{c}}", params
        )
        assert sql == "SELECT * FROM t WHERE x = $2 AND y = $1 AND z = {{c}}"


class TestCoercion:
    """Tests for the shared coercion helpers."""

    def test_to_number(self):
        assert coercion.to_number("12") == 12
        assert coercion.to_number(" 1.5 ") == 1.5
        assert coercion.to_number(True) == 1
        for bad in ("", "abc", "nan", None):
            with pytest.raises(ValueError):
                coercion.to_number(bad)

    def test_to_boolean(self):
        assert coercion.to_boolean("TRUE") is True
        assert coercion.to_boolean("0") is False
        assert coercion.to_boolean(2) is True
        with pytest.raises(ValueError):
            coercion.to_boolean("maybe")

    def test_to_date(self):
        assert coercion.to_date("2024-01-15T10:00:00Z") == datetime(2024, 1, 15, 10, tzinfo=timezone.utc)
        assert coercion.to_date(0) == datetime(1970, 1, 1, tzinfo=timezone.utc)
        with pytest.raises(ValueError):
            coercion.to_date("not a date")

    def test_to_array(self):
        assert coercion.to_array("a, b") == ["a", "b"]
        assert coercion.to_array('["x", 1]') == ["x", 1]
        assert coercion.to_array("single") == ["single"]

    def test_to_object(self):
        assert coercion.to_object('{"a": 1}') == {"a": 1}
        with pytest.raises(ValueError):
            coercion.to_object("[1]")

    def test_unknown_type_passes_through(self):
        assert coercion.coerce({"x": 1}, "uuid") == {"x": 1}

    def test_string_length_rules(self):
        validation = ParameterDefinition.model_validate(
            {"name": "s", "validation": {"min": 2, "max": 3}}
        ).validation
        assert coercion.rule_violation("s", "a", validation) == "Parameter s must be at least 2 characters"
        assert coercion.rule_violation("s", "abcd", validation) == "Parameter s must be at most 3 characters"
        assert coercion.rule_violation("s", "ab", validation) is None

    def test_invalid_pattern_reported(self):
        validation = ParameterDefinition.model_validate(
            {"name": "s", "validation": {"pattern": "("}}
        ).validation
        assert coercion.rule_violation("s", "x", validation) == "Parameter s has an invalid validation pattern"
