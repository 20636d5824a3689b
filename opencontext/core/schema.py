"""
Context type schema - the user-defined types entries can be promoted to.

Stored as schema.json next to the store; a missing or unreadable file means
no schema is configured.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from util.logging import logger

FIELD_TYPES = ("string", "string[]", "number", "boolean", "enum")


@dataclass
class SchemaField:
    type: str  # string, string[], number, boolean, enum
    required: bool = False
    description: Optional[str] = None
    values: Optional[List[str]] = None  # enum only
    default: Any = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.type}
        if self.required:
            data["required"] = True
        if self.description is not None:
            data["description"] = self.description
        if self.values is not None:
            data["values"] = list(self.values)
        if self.default is not None:
            data["default"] = self.default
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> 'SchemaField':
        return cls(
            type=data.get("type", "string"),
            required=bool(data.get("required", False)),
            description=data.get("description"),
            values=data.get("values"),
            default=data.get("default"),
        )


@dataclass
class SchemaType:
    name: str
    description: str
    fields: Dict[str, SchemaField] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "fields": {name: f.to_dict() for name, f in self.fields.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'SchemaType':
        return cls(
            name=data["name"],
            description=data.get("description", ""),
            fields={name: SchemaField.from_dict(f) for name, f in (data.get("fields") or {}).items()},
        )


@dataclass
class Schema:
    version: int = 1
    types: List[SchemaType] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"version": self.version, "types": [t.to_dict() for t in self.types]}

    @classmethod
    def from_dict(cls, data: Dict) -> 'Schema':
        return cls(
            version=data.get("version", 1),
            types=[SchemaType.from_dict(t) for t in data.get("types") or []],
        )


@dataclass
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)


def load_schema(path: Union[str, Path]) -> Optional[Schema]:
    """Load the schema, or None when the file is missing or corrupt."""
    path = Path(path)
    if not path.exists():
        return None
    try:
        return Schema.from_dict(json.loads(path.read_text(encoding="utf-8")))
    except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
        logger.warning(f"Ignoring unreadable schema at {path}: {e}")
        return None


def save_schema(schema: Schema, path: Union[str, Path]):
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(schema.to_dict(), indent=2), encoding="utf-8")


def get_schema_type(schema: Schema, type_name: str) -> Optional[SchemaType]:
    return next((t for t in schema.types if t.name == type_name), None)


def validate_entry(schema: Schema, type_name: str, data: Dict[str, Any]) -> ValidationResult:
    """Check structured data against a schema type's field definitions."""
    schema_type = get_schema_type(schema, type_name)
    if schema_type is None:
        return ValidationResult(False, [f'Unknown context type: "{type_name}"'])

    errors = []
    for name, definition in schema_type.fields.items():
        value = data.get(name)
        if definition.required and (value is None or value == ""):
            errors.append(f'Field "{name}" is required')
            continue
        if value is None:
            continue

        if definition.type == "enum" and definition.values:
            if value not in definition.values:
                errors.append(f'Field "{name}" must be one of: {", ".join(definition.values)}')
        elif definition.type == "string[]":
            if not isinstance(value, list):
                errors.append(f'Field "{name}" must be an array of strings')
        elif definition.type == "number":
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                errors.append(f'Field "{name}" must be a number')
        elif definition.type == "boolean":
            if not isinstance(value, bool):
                errors.append(f'Field "{name}" must be a boolean')

    return ValidationResult(not errors, errors)


def describe_schema(schema: Schema) -> str:
    """Human-readable listing of the schema's types and fields."""
    if not schema.types:
        return "No context types defined in schema."

    lines = [f"Schema v{schema.version} - {len(schema.types)} type(s):", ""]
    for schema_type in schema.types:
        lines.append(f"Type: {schema_type.name}")
        lines.append(f"  Description: {schema_type.description}")
        if schema_type.fields:
            lines.append("  Fields:")
            for name, definition in schema_type.fields.items():
                required = " (required)" if definition.required else " (optional)"
                enum_values = f" [{'|'.join(definition.values)}]" if definition.type == "enum" and definition.values else ""
                desc = f": {definition.description}" if definition.description else ""
                lines.append(f"    - {name}: {definition.type}{enum_values}{required}{desc}")
        lines.append("")
    return "\n".join(lines)
