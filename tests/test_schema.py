"""
Schema loading and entry validation.
"""

import json

import pytest

from opencontext.core.schema import (
    Schema, SchemaField, SchemaType, describe_schema, get_schema_type, load_schema,
    save_schema, validate_entry,
)


@pytest.fixture
def schema():
    return Schema(version=1, types=[
        SchemaType(
            name="decision",
            description="architecture decision with rationale",
            fields={
                "choice": SchemaField(type="string", required=True),
                "status": SchemaField(type="enum", values=["proposed", "accepted"]),
                "alternatives": SchemaField(type="string[]"),
                "confidence": SchemaField(type="number"),
                "final": SchemaField(type="boolean"),
            },
        ),
    ])


class TestLoadSave:

    def test_missing_file(self, tmp_path):
        assert load_schema(tmp_path / "schema.json") is None

    def test_corrupt_file(self, tmp_path):
        path = tmp_path / "schema.json"
        path.write_text("[[[", encoding="utf-8")
        assert load_schema(path) is None

    def test_round_trip(self, tmp_path, schema):
        path = tmp_path / "nested" / "schema.json"
        save_schema(schema, path)

        assert load_schema(path) == schema
        assert json.loads(path.read_text())["types"][0]["fields"]["choice"] == {"type": "string", "required": True}


class TestValidateEntry:

    def test_valid(self, schema):
        result = validate_entry(schema, "decision", {"choice": "postgres", "status": "accepted",
                                                     "alternatives": ["mysql"], "confidence": 0.8,
                                                     "final": True})
        assert result.valid
        assert result.errors == []

    def test_unknown_type(self, schema):
        result = validate_entry(schema, "recipe", {})
        assert not result.valid
        assert result.errors == ['Unknown context type: "recipe"']

    def test_field_errors(self, schema):
        result = validate_entry(schema, "decision", {
            "choice": "",
            "status": "rejected",
            "alternatives": "mysql",
            "confidence": "high",
            "final": 1,
        })

        assert result.errors == [
            'Field "choice" is required',
            'Field "status" must be one of: proposed, accepted',
            'Field "alternatives" must be an array of strings',
            'Field "confidence" must be a number',
            'Field "final" must be a boolean',
        ]

    def test_bool_is_not_a_number(self, schema):
        result = validate_entry(schema, "decision", {"choice": "x", "confidence": True})
        assert result.errors == ['Field "confidence" must be a number']


class TestDescribe:

    def test_lookup_and_describe(self, schema):
        assert get_schema_type(schema, "decision").name == "decision"
        assert get_schema_type(schema, "nope") is None

        text = describe_schema(schema)
        assert "Type: decision" in text
        assert "- status: enum [proposed|accepted] (optional)" in text

    def test_describe_empty(self):
        assert describe_schema(Schema()) == "No context types defined in schema."
