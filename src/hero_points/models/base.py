from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, ClassVar, Dict, List, Optional, Tuple

from pydantic import BaseModel
from pydantic.fields import FieldInfo
from pydantic_core import PydanticUndefined


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


_SCALARS: Tuple[Tuple[type, str], ...] = (
    # bool before int: bool is an int subclass
    (bool, "boolean"),
    (int, "integer"),
    (float, "number"),
    (datetime, "datetime"),
    (date, "date"),
    (str, "string"),
)


def _unwrap_optional(annotation: Any) -> Any:
    args = getattr(annotation, "__args__", None) or ()
    if type(None) not in args:
        return annotation
    rest = [a for a in args if a is not type(None)]
    return rest[0] if len(rest) == 1 else annotation


def logical_type(annotation: Any) -> str:
    """Storage-neutral type name for a field annotation."""
    annotation = _unwrap_optional(annotation)
    origin = getattr(annotation, "__origin__", None)
    if origin in (list, tuple, set):
        return "array"
    if origin is dict:
        return "object"
    for py_type, name in _SCALARS:
        if annotation is py_type:
            return name
    if isinstance(annotation, type):
        # str enums, Decimal etc. fall through to their base
        for py_type, name in _SCALARS:
            if issubclass(annotation, py_type):
                return name
    return getattr(annotation, "__name__", "object").lower()


def _column(field: FieldInfo) -> Dict[str, Any]:
    default = None if field.default is PydanticUndefined else field.default
    default = getattr(default, "value", default)
    return {
        "type": logical_type(field.annotation),
        "nullable": not field.is_required(),
        "default": default,
        "description": field.description,
    }


class DBSerializableModel(BaseModel):
    """
    Record stored by a BaseDBManager.

    Subclasses name their collection and the field groups that must stay
    unique; every backend enforces those groups since replay protection
    depends on them. `db_schema()` feeds the offline schema export only.
    """

    collection_name: ClassVar[str]
    primary_key: ClassVar[Optional[str]] = "id"
    unique_together: ClassVar[List[Tuple[str, ...]]] = []

    def serialize_for_db(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

    @classmethod
    def db_schema(cls) -> Dict[str, Any]:
        fields = cls.model_fields
        return {
            "collection_name": cls.collection_name,
            "primary_key": cls.primary_key,
            "properties": {name: _column(f) for name, f in fields.items()},
            "required": [name for name, f in fields.items() if f.is_required()],
            "unique_together": [list(group) for group in cls.unique_together],
        }
