"""
Attribute Values - Tagged value type for resource attributes.

Every attribute value flowing through the engine carries its own kind tag,
so the differ and executor compare and convert values without inspecting
untyped maps. Plain JSON-like data is converted at the boundary with
``Value.from_python`` and converted back with ``Value.to_python``.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional

REFERENCE_KEY = "$ref"


class ValueKind(Enum):
    """Kind tag carried by every Value."""

    NULL = "null"
    STRING = "string"
    NUMBER = "number"
    BOOL = "bool"
    LIST = "list"
    MAP = "map"
    UNKNOWN = "unknown"
    REFERENCE = "reference"


@dataclass(frozen=True)
class Reference:
    """A pointer to another instance's attribute (``type.name.attribute``)."""

    type_name: str
    name: str
    attribute: str

    @classmethod
    def parse(cls, text: str) -> "Reference":
        """
        Parse a reference of the form ``type.name.attribute``.

        Raises:
            ValueError: If the text does not have exactly three parts
        """
        parts = text.split(".")
        if len(parts) != 3 or not all(parts):
            raise ValueError(
                f"Invalid reference '{text}': expected 'type.name.attribute'"
            )
        return cls(type_name=parts[0], name=parts[1], attribute=parts[2])

    def __str__(self) -> str:
        return f"{self.type_name}.{self.name}.{self.attribute}"


@dataclass(frozen=True)
class Value:
    """
    Immutable tagged attribute value.

    Lists are stored as tuples of Values, maps as key-sorted tuples of
    (key, Value) pairs, so two Values compare equal exactly when their kind
    and content match.
    """

    kind: ValueKind
    payload: Any = None

    # Constructors

    @classmethod
    def null(cls) -> "Value":
        return cls(ValueKind.NULL)

    @classmethod
    def unknown(cls) -> "Value":
        return cls(ValueKind.UNKNOWN)

    @classmethod
    def string(cls, value: str) -> "Value":
        return cls(ValueKind.STRING, value)

    @classmethod
    def number(cls, value: Any) -> "Value":
        return cls(ValueKind.NUMBER, value)

    @classmethod
    def boolean(cls, value: bool) -> "Value":
        return cls(ValueKind.BOOL, bool(value))

    @classmethod
    def list_of(cls, items: List["Value"]) -> "Value":
        return cls(ValueKind.LIST, tuple(items))

    @classmethod
    def map_of(cls, items: Dict[str, "Value"]) -> "Value":
        return cls(ValueKind.MAP, tuple(sorted(items.items())))

    @classmethod
    def reference(cls, ref: Reference) -> "Value":
        return cls(ValueKind.REFERENCE, ref)

    @classmethod
    def from_python(cls, obj: Any) -> "Value":
        """
        Convert JSON-like Python data into a Value.

        A mapping of the exact form ``{"$ref": "type.name.attr"}`` becomes a
        REFERENCE value.

        Raises:
            TypeError: If the object is not JSON-like
        """
        if isinstance(obj, Value):
            return obj
        if obj is None:
            return cls.null()
        # bool must be checked before int
        if isinstance(obj, bool):
            return cls.boolean(obj)
        if isinstance(obj, (int, float)):
            return cls.number(obj)
        if isinstance(obj, str):
            return cls.string(obj)
        if isinstance(obj, (list, tuple)):
            return cls.list_of([cls.from_python(item) for item in obj])
        if isinstance(obj, dict):
            if set(obj.keys()) == {REFERENCE_KEY}:
                return cls.reference(Reference.parse(obj[REFERENCE_KEY]))
            return cls.map_of({str(k): cls.from_python(v) for k, v in obj.items()})
        raise TypeError(f"Cannot convert {type(obj).__name__} to an attribute value")

    # Conversion

    def to_python(self) -> Any:
        """
        Convert back into plain JSON-like Python data.

        Raises:
            ValueError: If the value (or a nested value) is not known yet
        """
        if self.kind == ValueKind.UNKNOWN:
            raise ValueError("Value is not known until apply")
        if self.kind == ValueKind.REFERENCE:
            return {REFERENCE_KEY: str(self.payload)}
        if self.kind == ValueKind.LIST:
            return [item.to_python() for item in self.payload]
        if self.kind == ValueKind.MAP:
            return {k: v.to_python() for k, v in self.payload}
        return self.payload

    def as_dict(self) -> Dict[str, "Value"]:
        if self.kind != ValueKind.MAP:
            raise TypeError(f"Value of kind {self.kind.value} is not a map")
        return dict(self.payload)

    def as_list(self) -> List["Value"]:
        if self.kind != ValueKind.LIST:
            raise TypeError(f"Value of kind {self.kind.value} is not a list")
        return list(self.payload)

    # Inspection

    @property
    def is_null(self) -> bool:
        return self.kind == ValueKind.NULL

    @property
    def is_known(self) -> bool:
        """True when neither this value nor anything nested in it is pending."""
        if self.kind in (ValueKind.UNKNOWN, ValueKind.REFERENCE):
            return False
        return all(child.is_known for child in self.children())

    def children(self) -> Iterator["Value"]:
        if self.kind == ValueKind.LIST:
            yield from self.payload
        elif self.kind == ValueKind.MAP:
            for _, v in self.payload:
                yield v

    def references(self) -> List[Reference]:
        """All references contained in this value, depth first."""
        if self.kind == ValueKind.REFERENCE:
            return [self.payload]
        refs: List[Reference] = []
        for child in self.children():
            refs.extend(child.references())
        return refs

    def render(self, sensitive: bool = False) -> str:
        """Human-readable rendering used in plan and drift tables."""
        if sensitive and self.kind != ValueKind.NULL:
            return "(sensitive)"
        if self.kind == ValueKind.UNKNOWN:
            return "(known after apply)"
        if self.kind == ValueKind.REFERENCE:
            return f"${{{self.payload}}}"
        if self.kind == ValueKind.NULL:
            return "null"
        if self.kind == ValueKind.STRING:
            return f'"{self.payload}"'
        if self.kind == ValueKind.BOOL:
            return "true" if self.payload else "false"
        if self.kind == ValueKind.LIST:
            return "[" + ", ".join(item.render() for item in self.payload) + "]"
        if self.kind == ValueKind.MAP:
            inner = ", ".join(f"{k} = {v.render()}" for k, v in self.payload)
            return "{" + inner + "}"
        return str(self.payload)


# Callback used to replace references: (reference) -> Value
ReferenceResolver = Callable[[Reference], Value]


def substitute(value: Value, resolve: ReferenceResolver) -> Value:
    """Return a copy of ``value`` with every reference replaced by ``resolve(ref)``."""
    if value.kind == ValueKind.REFERENCE:
        return resolve(value.payload)
    if value.kind == ValueKind.LIST:
        return Value.list_of([substitute(item, resolve) for item in value.payload])
    if value.kind == ValueKind.MAP:
        return Value.map_of({k: substitute(v, resolve) for k, v in value.payload})
    return value


def values_from_python(data: Optional[Dict[str, Any]]) -> Dict[str, Value]:
    """Convert a mapping of plain attribute data into Values."""
    return {name: Value.from_python(v) for name, v in (data or {}).items()}


def values_to_python(values: Dict[str, Value]) -> Dict[str, Any]:
    """Convert a mapping of known Values back into plain data."""
    return {name: v.to_python() for name, v in values.items()}
