"""
Function Signatures and Output Type Descriptors

A patched function is identified by its name, prompt, ordered input
parameters and output type. Types are described with a small structural
schema language instead of host-language reflection:

- primitive: str, int, float, bool, date, datetime
- literal:   a closed set of allowed values ("good" | "bad")
- sequence:  ordered list of one element type
- record:    named, typed fields, each with an optional semantic hint

Usage:
    from alignfn.signature import FunctionSignature, T

    truthiness = T.record("Truthiness", [
        T.field("is_true", T.boolean()),
        T.field("confidence", T.literal("high", "medium", "low")),
        T.field("explanation", T.string(), hint="One sentence"),
    ])
    signature = FunctionSignature(
        name="get_truthiness",
        prompt="Evaluate the given statement for truthiness",
        inputs=[("statement", T.string())],
        output=truthiness,
    )
    signature.fingerprint  # stable sha256 hex digest
"""

import hashlib
import json
from dataclasses import dataclass, replace
from functools import cached_property
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

PRIMITIVE = "primitive"
LITERAL = "literal"
SEQUENCE = "sequence"
RECORD = "record"

KINDS = (PRIMITIVE, LITERAL, SEQUENCE, RECORD)
PRIMITIVES = ("str", "int", "float", "bool", "date", "datetime")

# How each primitive is presented to the model
_PRIMITIVE_DESCRIPTIONS = {
    "str": "string",
    "int": "integer",
    "float": "number",
    "bool": "boolean",
    "date": "date string (YYYY-MM-DD)",
    "datetime": "datetime string (ISO 8601)",
}

_PRIMITIVE_JSON_SCHEMA = {
    "str": {"type": "string"},
    "int": {"type": "integer"},
    "float": {"type": "number"},
    "bool": {"type": "boolean"},
    "date": {"type": "string", "format": "date"},
    "datetime": {"type": "string", "format": "date-time"},
}


@dataclass(frozen=True)
class FieldDescriptor:
    """A named field of a record type."""

    name: str
    type: "TypeDescriptor"
    hint: str = ""
    required: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type.to_dict(),
            "hint": self.hint,
            "required": self.required,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FieldDescriptor":
        return cls(
            name=data["name"],
            type=TypeDescriptor.from_dict(data["type"]),
            hint=data.get("hint", ""),
            required=data.get("required", True),
        )


@dataclass(frozen=True)
class TypeDescriptor:
    """Structural description of a value the model must produce."""

    kind: str
    primitive: Optional[str] = None
    literals: Tuple[Any, ...] = ()
    element: Optional["TypeDescriptor"] = None
    fields: Tuple[FieldDescriptor, ...] = ()
    name: Optional[str] = None
    nullable: bool = False

    def __post_init__(self):
        if self.kind not in KINDS:
            raise ValueError(f"Unknown type kind: {self.kind}")

        if self.kind == PRIMITIVE and self.primitive not in PRIMITIVES:
            raise ValueError(f"Unknown primitive: {self.primitive}. Supported: {PRIMITIVES}")

        if self.kind == LITERAL:
            object.__setattr__(self, "literals", tuple(self.literals))
            if not self.literals:
                raise ValueError("A literal type needs at least one allowed value")
            for value in self.literals:
                if not isinstance(value, (str, int, bool)):
                    raise ValueError(f"Literal values must be str, int or bool, got {value!r}")

        if self.kind == SEQUENCE and self.element is None:
            raise ValueError("A sequence type needs an element type")

        if self.kind == RECORD:
            object.__setattr__(self, "fields", tuple(self.fields))
            names = [f.name for f in self.fields]
            if len(names) != len(set(names)):
                raise ValueError(f"Duplicate field names in record {self.name}: {names}")

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Canonical dictionary form, used for fingerprinting and storage."""
        data: Dict[str, Any] = {"kind": self.kind, "nullable": self.nullable}
        if self.kind == PRIMITIVE:
            data["primitive"] = self.primitive
        elif self.kind == LITERAL:
            data["literals"] = list(self.literals)
        elif self.kind == SEQUENCE:
            data["element"] = self.element.to_dict()
        elif self.kind == RECORD:
            data["name"] = self.name
            data["fields"] = [f.to_dict() for f in self.fields]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TypeDescriptor":
        kind = data["kind"]
        return cls(
            kind=kind,
            primitive=data.get("primitive"),
            literals=tuple(data.get("literals", ())),
            element=cls.from_dict(data["element"]) if data.get("element") else None,
            fields=tuple(FieldDescriptor.from_dict(f) for f in data.get("fields", ())),
            name=data.get("name"),
            nullable=data.get("nullable", False),
        )

    # ------------------------------------------------------------------
    # Presentation
    # ------------------------------------------------------------------

    def describe(self, indent: int = 0) -> str:
        """
        Human-readable shape description embedded in prompts.

        Record fields are listed one per line with their hints as trailing
        comments; optional fields are marked with "?".
        """
        pad = "  " * indent

        if self.kind == PRIMITIVE:
            text = _PRIMITIVE_DESCRIPTIONS[self.primitive]
        elif self.kind == LITERAL:
            text = " | ".join(json.dumps(v) for v in self.literals)
        elif self.kind == SEQUENCE:
            text = f"list of {self.element.describe(indent)}"
        else:
            lines = [f"object {self.name or ''}".rstrip() + " {"]
            for f in self.fields:
                marker = "" if f.required else "?"
                line = f"{pad}  {json.dumps(f.name)}{marker}: {f.type.describe(indent + 1)}"
                if f.hint:
                    line += f"  // {f.hint}"
                lines.append(line)
            lines.append(f"{pad}}}")
            text = "\n".join(lines)

        if self.nullable:
            text += " or null"
        return text

    def to_json_schema(self) -> Dict[str, Any]:
        """JSON Schema form, passed to providers that accept a structured-output hint."""
        if self.kind == PRIMITIVE:
            schema = dict(_PRIMITIVE_JSON_SCHEMA[self.primitive])
        elif self.kind == LITERAL:
            schema = {"enum": list(self.literals)}
        elif self.kind == SEQUENCE:
            schema = {"type": "array", "items": self.element.to_json_schema()}
        else:
            properties = {}
            for f in self.fields:
                prop = f.type.to_json_schema()
                if f.hint:
                    prop["description"] = f.hint
                properties[f.name] = prop
            schema = {
                "type": "object",
                "properties": properties,
                "required": [f.name for f in self.fields if f.required],
            }
            if self.name:
                schema["title"] = self.name

        if self.nullable:
            schema = {"anyOf": [schema, {"type": "null"}]}
        return schema

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def optional(self) -> "TypeDescriptor":
        """Copy of this descriptor that also accepts null."""
        return replace(self, nullable=True)

    def get_field(self, name: str) -> Optional[FieldDescriptor]:
        for f in self.fields:
            if f.name == name:
                return f
        return None


class T:
    """Constructors for type descriptors."""

    @staticmethod
    def string() -> TypeDescriptor:
        return TypeDescriptor(kind=PRIMITIVE, primitive="str")

    @staticmethod
    def integer() -> TypeDescriptor:
        return TypeDescriptor(kind=PRIMITIVE, primitive="int")

    @staticmethod
    def number() -> TypeDescriptor:
        return TypeDescriptor(kind=PRIMITIVE, primitive="float")

    @staticmethod
    def boolean() -> TypeDescriptor:
        return TypeDescriptor(kind=PRIMITIVE, primitive="bool")

    @staticmethod
    def date() -> TypeDescriptor:
        return TypeDescriptor(kind=PRIMITIVE, primitive="date")

    @staticmethod
    def datetime() -> TypeDescriptor:
        return TypeDescriptor(kind=PRIMITIVE, primitive="datetime")

    @staticmethod
    def literal(*values: Union[str, int, bool]) -> TypeDescriptor:
        return TypeDescriptor(kind=LITERAL, literals=tuple(values))

    @staticmethod
    def sequence(element: TypeDescriptor) -> TypeDescriptor:
        return TypeDescriptor(kind=SEQUENCE, element=element)

    @staticmethod
    def record(name: str, fields: Iterable[FieldDescriptor]) -> TypeDescriptor:
        return TypeDescriptor(kind=RECORD, name=name, fields=tuple(fields))

    @staticmethod
    def field(name: str, type: TypeDescriptor, hint: str = "", required: bool = True) -> FieldDescriptor:
        return FieldDescriptor(name=name, type=type, hint=hint, required=required)


@dataclass(frozen=True)
class InputParameter:
    """One declared input of a patched function."""

    name: str
    type: TypeDescriptor

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "type": self.type.to_dict()}


@dataclass(frozen=True)
class FunctionSignature:
    """
    Identity of a patched function.

    Any change to the name, prompt, input order/types or output type
    (including hints) yields a different fingerprint, so alignment data
    recorded against an older contract is never reused.
    """

    name: str
    prompt: str
    inputs: Tuple[InputParameter, ...]
    output: TypeDescriptor

    def __post_init__(self):
        params = []
        for item in self.inputs:
            if isinstance(item, InputParameter):
                params.append(item)
            else:
                param_name, param_type = item
                params.append(InputParameter(name=param_name, type=param_type))
        object.__setattr__(self, "inputs", tuple(params))

        names = [p.name for p in self.inputs]
        if len(names) != len(set(names)):
            raise ValueError(f"Duplicate input names for {self.name}: {names}")
        if not self.prompt or not self.prompt.strip():
            raise ValueError(f"Signature {self.name} needs a non-empty prompt")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "prompt": self.prompt,
            "inputs": [p.to_dict() for p in self.inputs],
            "output": self.output.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FunctionSignature":
        return cls(
            name=data["name"],
            prompt=data["prompt"],
            inputs=tuple(
                InputParameter(name=p["name"], type=TypeDescriptor.from_dict(p["type"]))
                for p in data["inputs"]
            ),
            output=TypeDescriptor.from_dict(data["output"]),
        )

    def canonical_json(self) -> str:
        """Deterministic JSON form; list order (inputs, fields) is significant."""
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    @cached_property
    def fingerprint(self) -> str:
        return fingerprint(self)

    @property
    def input_names(self) -> List[str]:
        return [p.name for p in self.inputs]

    def bind(self, args: Sequence[Any], kwargs: Dict[str, Any]) -> Dict[str, Any]:
        """
        Bind call arguments to declared input names.

        Raises:
            TypeError: On missing, duplicated or unexpected arguments
        """
        names = self.input_names
        if len(args) > len(names):
            raise TypeError(f"{self.name}() takes {len(names)} arguments but {len(args)} were given")

        bound = dict(zip(names, args))
        for key, value in kwargs.items():
            if key not in names:
                raise TypeError(f"{self.name}() got an unexpected argument '{key}'")
            if key in bound:
                raise TypeError(f"{self.name}() got multiple values for argument '{key}'")
            bound[key] = value

        missing = [n for n in names if n not in bound]
        if missing:
            raise TypeError(f"{self.name}() missing arguments: {', '.join(missing)}")

        return {n: bound[n] for n in names}


def fingerprint(signature: FunctionSignature) -> str:
    """Stable sha256 identity of a signature."""
    return hashlib.sha256(signature.canonical_json().encode("utf-8")).hexdigest()
