from __future__ import annotations

import types
import typing
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, Mapping, Optional, Tuple

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DBSerializableModel(BaseModel):
    """
    Base Pydantic model that knows how to:
    - Serialize itself for DB persistence
    - Provide a backend-agnostic DB schema description derived from fields

    The actual SQL/NoSQL DDL is produced offline by the schema generator
    using this description; this class is not meant to hit the database
    at runtime for schema work.
    """

    # Logical collection / table name; subclasses should override
    collection_name: ClassVar[str]

    # Optional explicit primary key field; defaults to "id" if present
    primary_key: ClassVar[Optional[str]] = "id"

    # Fields carrying a uniqueness constraint in every backend. Nullable
    # fields are only unique when set.
    unique_fields: ClassVar[Tuple[str, ...]] = ()

    def serialize_for_db(self) -> Dict[str, Any]:
        """
        Convert to a dict suitable for DB persistence.

        Enums are stored by value so every backend sees plain strings.
        """
        data = self.model_dump(by_alias=True, exclude_none=True)
        return {key: _to_db_value(value) for key, value in data.items()}

    @classmethod
    def db_schema(cls) -> Dict[str, Any]:
        """
        Return a backend-agnostic schema description derived from model fields.

        The schema generator runs this once (e.g. from a CLI) to produce:
        - SQL DDL for relational databases
        - JSON/metadata for NoSQL collections and indexes
        """
        fields: Mapping[str, Any] = cls.model_fields

        properties: Dict[str, Any] = {}
        required: list[str] = []

        for name, field in fields.items():
            field_type, nullable = cls._map_type(field.annotation)

            default = field.default
            if isinstance(default, Enum):
                default = default.value

            properties[name] = {
                "type": field_type,
                "nullable": nullable or not field.is_required() and default is None,
                "default": default if default is not None else None,
                "description": field.description,
            }

            if field.is_required():
                required.append(name)

        return {
            "collection_name": cls.collection_name,
            "primary_key": cls.primary_key,
            "unique": list(cls.unique_fields),
            "properties": properties,
            "required": required,
        }

    @staticmethod
    def _map_type(annotation: Any) -> Tuple[str, bool]:
        """
        Map a Python / Pydantic type annotation to a generic logical type and
        whether the annotation admits None.
        """
        nullable = False
        origin: Any = typing.get_origin(annotation)
        if origin is typing.Union or origin is types.UnionType:
            args = [a for a in typing.get_args(annotation) if a is not type(None)]
            nullable = len(args) != len(typing.get_args(annotation))
            annotation = args[0] if len(args) == 1 else object
            origin = typing.get_origin(annotation)

        if origin in (list, tuple, set):
            return "array", nullable
        if origin is dict or annotation is dict:
            return "object", nullable

        if isinstance(annotation, type) and issubclass(annotation, Enum):
            return "string", nullable
        if annotation is bool:
            return "boolean", nullable
        if annotation is int:
            return "integer", nullable
        if annotation is float:
            return "number", nullable
        if annotation is str:
            return "string", nullable

        # Fallback for datetime, Decimal, etc.; generator can refine using metadata
        name = getattr(annotation, "__name__", "object")
        return name.lower(), nullable


def _to_db_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _to_db_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_to_db_value(v) for v in value]
    return value


class PaginatedResult(BaseModel):
    items: list[Any] = Field(default_factory=list)
    total: int
    limit: int
    offset: int
