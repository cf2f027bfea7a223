"""Unit tests for validation.py - JSON Schema validation."""

from managers.rest.manager import SPEC_SCHEMA
from validation import validate_schema, validate_spec_against_schema


class TestValidateSchema:
    """Tests for validate_schema function."""

    def test_valid_simple_schema(self):
        """Test validation of a simple valid schema."""
        schema = {
            "type": "object",
            "properties": {
                "name": {"type": "string"},
                "count": {"type": "integer"},
            },
        }
        is_valid, error = validate_schema(schema)
        assert is_valid is True
        assert error is None

    def test_invalid_schema_bad_type(self):
        """Test that an unknown type is rejected."""
        schema = {"type": "not-a-type"}
        is_valid, error = validate_schema(schema)
        assert is_valid is False
        assert error.startswith("Invalid schema:")

    def test_invalid_required_not_list(self):
        is_valid, error = validate_schema({"type": "object", "required": "name"})
        assert is_valid is False
        assert error is not None

    def test_empty_schema_is_valid(self):
        is_valid, error = validate_schema({})
        assert is_valid is True
        assert error is None

    def test_rest_manager_schema_is_valid(self):
        is_valid, error = validate_schema(SPEC_SCHEMA)
        assert is_valid is True
        assert error is None


class TestValidateSpecAgainstSchema:
    """Tests for validate_spec_against_schema function."""

    def test_valid_spec_matches_schema(self):
        schema = {
            "type": "object",
            "required": ["name"],
            "properties": {"name": {"type": "string"}},
        }
        is_valid, error = validate_spec_against_schema({"name": "test"}, schema)
        assert is_valid is True
        assert error is None

    def test_missing_required_field(self):
        """Test that missing required field fails validation."""
        schema = {
            "type": "object",
            "required": ["name", "repo"],
            "properties": {
                "name": {"type": "string"},
                "repo": {"type": "string"},
            },
        }
        is_valid, error = validate_spec_against_schema({"name": "test"}, schema)
        assert is_valid is False
        assert error == "(root): 'repo' is a required property"

    def test_wrong_type_reports_path(self):
        schema = {
            "type": "object",
            "properties": {
                "config": {
                    "type": "object",
                    "properties": {"replicas": {"type": "integer"}},
                }
            },
        }
        spec = {"config": {"replicas": "three"}}
        is_valid, error = validate_spec_against_schema(spec, schema)
        assert is_valid is False
        assert error.startswith("config.replicas:")

    def test_array_item_path(self):
        schema = {
            "type": "object",
            "properties": {"ports": {"type": "array", "items": {"type": "integer"}}},
        }
        is_valid, error = validate_spec_against_schema({"ports": [80, "443"]}, schema)
        assert is_valid is False
        assert error.startswith("ports.1:")

    def test_multiple_errors_joined(self):
        """Test that multiple validation errors are reported."""
        schema = {
            "type": "object",
            "required": ["name"],
            "properties": {
                "name": {"type": "string"},
                "count": {"type": "integer"},
            },
        }
        is_valid, error = validate_spec_against_schema({"count": "x"}, schema)
        assert is_valid is False
        assert "; " in error
        assert "name" in error
        assert "count" in error

    def test_additional_properties_not_allowed(self):
        schema = {
            "type": "object",
            "properties": {"name": {"type": "string"}},
            "additionalProperties": False,
        }
        spec = {"name": "test", "extra": "not allowed"}
        is_valid, error = validate_spec_against_schema(spec, schema)
        assert is_valid is False
        assert "extra" in error

    def test_empty_spec_against_empty_schema(self):
        is_valid, error = validate_spec_against_schema({}, {})
        assert is_valid is True
        assert error is None

    def test_rest_resource_spec(self):
        """Test a realistic REST resource spec."""
        spec = {
            "url": "https://api.example.com/buckets",
            "id": "logs",
            "body": {"region": "eu-west-1", "versioning": True},
            "headers": {"X-Team": "platform"},
        }
        is_valid, error = validate_spec_against_schema(spec, SPEC_SCHEMA)
        assert is_valid is True
        assert error is None

    def test_rest_resource_spec_bad_header(self):
        spec = {
            "url": "https://api.example.com/buckets",
            "id": 3,
            "body": {},
            "headers": {"X-Retries": 3},
        }
        is_valid, error = validate_spec_against_schema(spec, SPEC_SCHEMA)
        assert is_valid is False
        assert error.startswith("headers.X-Retries:")
