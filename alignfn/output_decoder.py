"""
Typed Output Decoder

Parses free-form model text into a value of a declared TypeDescriptor.

Decoding rules:
- JSON is extracted from the response (code fences and surrounding prose are
  tolerated for records and sequences)
- primitives are coerced from recognizable text ("42", "true", "2024-01-31")
- literal membership is exact, no case folding or nearest-match guessing
- records are validated field by field, sequences element by element
- missing required fields and type mismatches are rejected, never truncated

Failures raise OutputValidationError with a JSON-path-like location so the
repair prompt can tell the model exactly what was wrong.
"""

import json
import re
from datetime import date, datetime
from typing import Any, List, Mapping

from .errors import OutputValidationError
from .signature import LITERAL, PRIMITIVE, RECORD, SEQUENCE, TypeDescriptor

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*(.*?)\s*```", re.DOTALL)
_INT_RE = re.compile(r"^[+-]?\d+$")

_TRUE_WORDS = ("true", "yes", "y", "1")
_FALSE_WORDS = ("false", "no", "n", "0")


class OutputDecoder:
    """Data-driven decoder over TypeDescriptor values."""

    def decode(self, raw: str, descriptor: TypeDescriptor) -> Any:
        """
        Decode raw model text into a validated value.

        Args:
            raw: The model's raw response text
            descriptor: Declared output type

        Returns:
            The coerced value (dicts for records, lists for sequences)

        Raises:
            OutputValidationError: If the text cannot be coerced
        """
        if raw is None:
            raise OutputValidationError("$", "empty response")

        value = self._parse(raw, descriptor)
        return self.coerce(value, descriptor)

    def coerce(self, value: Any, descriptor: TypeDescriptor, path: str = "$") -> Any:
        """Validate and coerce an already-parsed value against a descriptor."""
        if value is None:
            if descriptor.nullable:
                return None
            raise OutputValidationError(path, f"expected {self._short_name(descriptor)}, got null")

        if descriptor.kind == PRIMITIVE:
            return self._coerce_primitive(value, descriptor.primitive, path)
        if descriptor.kind == LITERAL:
            return self._coerce_literal(value, descriptor, path)
        if descriptor.kind == SEQUENCE:
            return self._coerce_sequence(value, descriptor, path)
        if descriptor.kind == RECORD:
            return self._coerce_record(value, descriptor, path)

        raise OutputValidationError(path, f"unsupported type kind {descriptor.kind}")

    # ------------------------------------------------------------------
    # Encoding (values -> text), used for prompts and datasets
    # ------------------------------------------------------------------

    def encode(self, value: Any, descriptor: TypeDescriptor) -> str:
        """Render a value as the JSON text a model is expected to produce."""
        return json.dumps(self.to_jsonable(value, descriptor), ensure_ascii=False)

    def to_jsonable(self, value: Any, descriptor: TypeDescriptor) -> Any:
        if value is None:
            return None

        if descriptor.kind == PRIMITIVE:
            if descriptor.primitive in ("date", "datetime") and isinstance(value, (date, datetime)):
                return value.isoformat()
            return value

        if descriptor.kind == SEQUENCE:
            return [self.to_jsonable(item, descriptor.element) for item in value]

        if descriptor.kind == RECORD:
            result = {}
            for f in descriptor.fields:
                if isinstance(value, Mapping):
                    if f.name not in value:
                        continue
                    field_value = value[f.name]
                else:
                    if not hasattr(value, f.name):
                        continue
                    field_value = getattr(value, f.name)
                result[f.name] = self.to_jsonable(field_value, f.type)
            return result

        return value

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    def _parse(self, raw: str, descriptor: TypeDescriptor) -> Any:
        text = raw.strip()
        parsed = self._loads(text)

        # Fences only matter when the whole response is not already JSON
        if parsed is _MISSING:
            fenced = _FENCE_RE.search(text)
            if fenced:
                text = fenced.group(1).strip()
                parsed = self._loads(text)

        if descriptor.kind in (RECORD, SEQUENCE):
            if parsed is not _MISSING:
                return parsed
            embedded = self._find_embedded_json(text, "{" if descriptor.kind == RECORD else "[")
            if embedded is _MISSING:
                raise OutputValidationError("$", "response is not valid JSON")
            return embedded

        # Primitives and literals: fall back to the bare text
        if parsed is _MISSING:
            if descriptor.nullable and text.lower() in ("null", "none", ""):
                return None
            return text

        if descriptor.kind == PRIMITIVE and descriptor.primitive == "str" and not isinstance(parsed, str):
            if parsed is None:
                return None
            return text

        return parsed

    @staticmethod
    def _loads(text: str) -> Any:
        try:
            return json.loads(text)
        except (json.JSONDecodeError, ValueError):
            return _MISSING

    def _find_embedded_json(self, text: str, opener: str) -> Any:
        """Return the first decodable JSON value starting with ``opener``."""
        decoder = json.JSONDecoder()
        start = text.find(opener)
        while start != -1:
            try:
                value, _ = decoder.raw_decode(text, start)
                return value
            except json.JSONDecodeError:
                start = text.find(opener, start + 1)
        return _MISSING

    # ------------------------------------------------------------------
    # Coercion
    # ------------------------------------------------------------------

    def _coerce_primitive(self, value: Any, primitive: str, path: str) -> Any:
        if primitive == "str":
            if isinstance(value, str):
                return value
            raise OutputValidationError(path, f"expected string, got {type(value).__name__}")

        if primitive == "int":
            if isinstance(value, bool):
                raise OutputValidationError(path, "expected integer, got boolean")
            if isinstance(value, int):
                return value
            if isinstance(value, float) and value.is_integer():
                return int(value)
            if isinstance(value, str):
                text = value.strip()
                if _INT_RE.match(text):
                    return int(text)
                try:
                    number = float(text)
                except ValueError:
                    number = None
                if number is not None and number.is_integer():
                    return int(number)
            raise OutputValidationError(path, f"expected integer, got {value!r}")

        if primitive == "float":
            if isinstance(value, bool):
                raise OutputValidationError(path, "expected number, got boolean")
            if isinstance(value, (int, float)):
                return float(value)
            if isinstance(value, str):
                try:
                    return float(value.strip())
                except ValueError:
                    pass
            raise OutputValidationError(path, f"expected number, got {value!r}")

        if primitive == "bool":
            if isinstance(value, bool):
                return value
            if isinstance(value, int) and value in (0, 1):
                return bool(value)
            if isinstance(value, str):
                word = value.strip().lower().rstrip(".")
                if word in _TRUE_WORDS:
                    return True
                if word in _FALSE_WORDS:
                    return False
            raise OutputValidationError(path, f"expected boolean, got {value!r}")

        if primitive == "date":
            if isinstance(value, datetime):
                return value.date()
            if isinstance(value, date):
                return value
            if isinstance(value, str):
                text = value.strip()
                try:
                    return date.fromisoformat(text)
                except ValueError:
                    pass
                try:
                    return self._parse_datetime(text).date()
                except ValueError:
                    pass
            raise OutputValidationError(path, f"expected ISO date (YYYY-MM-DD), got {value!r}")

        if primitive == "datetime":
            if isinstance(value, datetime):
                return value
            if isinstance(value, str):
                try:
                    return self._parse_datetime(value.strip())
                except ValueError:
                    pass
            raise OutputValidationError(path, f"expected ISO 8601 datetime, got {value!r}")

        raise OutputValidationError(path, f"unsupported primitive {primitive}")

    @staticmethod
    def _parse_datetime(text: str) -> datetime:
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        return datetime.fromisoformat(text)

    def _coerce_literal(self, value: Any, descriptor: TypeDescriptor, path: str) -> Any:
        candidate = value.strip() if isinstance(value, str) else value
        for allowed in descriptor.literals:
            # bool is an int subclass; True must not match 1
            if type(candidate) is type(allowed) and candidate == allowed:
                return allowed
        allowed_text = ", ".join(json.dumps(v) for v in descriptor.literals)
        raise OutputValidationError(path, f"{value!r} is not one of {allowed_text}")

    def _coerce_sequence(self, value: Any, descriptor: TypeDescriptor, path: str) -> List[Any]:
        if not isinstance(value, (list, tuple)):
            raise OutputValidationError(path, f"expected list, got {type(value).__name__}")
        return [
            self.coerce(item, descriptor.element, f"{path}[{index}]")
            for index, item in enumerate(value)
        ]

    def _coerce_record(self, value: Any, descriptor: TypeDescriptor, path: str) -> dict:
        if not isinstance(value, Mapping):
            raise OutputValidationError(path, f"expected object, got {type(value).__name__}")

        result = {}
        for f in descriptor.fields:
            field_path = f"{path}.{f.name}"
            if f.name not in value:
                if f.required:
                    raise OutputValidationError(field_path, "missing required field")
                result[f.name] = None
                continue

            field_value = value[f.name]
            if field_value is None and not f.required:
                result[f.name] = None
                continue

            result[f.name] = self.coerce(field_value, f.type, field_path)

        # Unknown fields are dropped
        return result

    @staticmethod
    def _short_name(descriptor: TypeDescriptor) -> str:
        if descriptor.kind == PRIMITIVE:
            return descriptor.primitive
        if descriptor.kind == RECORD:
            return descriptor.name or "object"
        return descriptor.kind


class _Missing:
    def __repr__(self):
        return "<missing>"


_MISSING = _Missing()
