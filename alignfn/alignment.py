"""
Alignment Declarations

Assertions about a patched function's behaviour, declared as data:

    suite = AlignmentSuite()
    with suite.it("should classify clearly positive text as positive"):
        suite.expect(classify, "I love this").to_equal("positive")
        suite.expect(get_truthiness, "10 is greater than 3").to_match({"is_true": True})

Applying a suite (AlignFn.declare_alignment) replaces each signature's
example set with the suite's assertions. The same suite can be verified
against the live functions with ``await suite.verify(alignfn)``.

Partial assertions (``to_match``) only fix the listed record fields; they
are shown to the model but never used as fine-tuning data.
"""

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple, Union

from .distillation.models import AlignmentExample
from .errors import AlignFnError
from .output_decoder import OutputDecoder
from .signature import RECORD, FunctionSignature
from .utils.logger import get_logger

logger = get_logger(__name__)

_decoder = OutputDecoder()


@dataclass(frozen=True)
class Assertion:
    """One declared (input → expected output) pair."""

    signature: FunctionSignature
    inputs: Dict[str, Any]
    expected: Any
    partial: bool = False
    description: Optional[str] = None

    def to_example(self) -> AlignmentExample:
        return AlignmentExample(
            inputs={
                param.name: _decoder.to_jsonable(self.inputs.get(param.name), param.type)
                for param in self.signature.inputs
            },
            expected=_decoder.to_jsonable(self.expected, self.signature.output),
            partial=self.partial,
            description=self.description,
        )


@dataclass
class AssertionResult:
    """Outcome of verifying one assertion against a live function."""

    assertion: Assertion
    passed: bool
    actual: Any = None
    error: Optional[str] = None


class Expectation:
    """Pending assertion returned by AlignmentSuite.expect."""

    def __init__(self, suite: "AlignmentSuite", signature: FunctionSignature, inputs: Dict[str, Any]):
        self._suite = suite
        self._signature = signature
        self._inputs = inputs

    def to_equal(self, expected: Any) -> Assertion:
        """The full output must equal ``expected``."""
        return self._suite._add(self._signature, self._inputs, expected, partial=False)

    def to_match(self, expected: Mapping[str, Any]) -> Assertion:
        """Only the listed record fields are fixed (recursively)."""
        if not isinstance(expected, Mapping):
            raise TypeError("to_match expects a mapping of record fields")
        return self._suite._add(self._signature, self._inputs, dict(expected), partial=True)


class AlignmentSuite:
    """Ordered collection of alignment assertions across signatures."""

    def __init__(self, name: str = "alignment"):
        self.name = name
        self._assertions: List[Assertion] = []
        self._description: Optional[str] = None

    def __len__(self) -> int:
        return len(self._assertions)

    def __iter__(self) -> Iterator[Assertion]:
        return iter(self._assertions)

    @contextmanager
    def it(self, description: str) -> Iterator["AlignmentSuite"]:
        """Group the assertions declared inside the block under a description."""
        previous = self._description
        self._description = description
        try:
            yield self
        finally:
            self._description = previous

    def expect(self, target: Any, *args, **kwargs) -> Expectation:
        """
        Start an assertion for a call of ``target`` with the given arguments.

        Args:
            target: AlignedFunction or FunctionSignature
        """
        signature = _signature_of(target)
        return Expectation(self, signature, signature.bind(args, kwargs))

    def add(
        self,
        target: Any,
        inputs: Mapping[str, Any],
        expected: Any,
        partial: bool = False,
        description: Optional[str] = None,
    ) -> Assertion:
        """Add an assertion with inputs given by name."""
        signature = _signature_of(target)
        bound = signature.bind((), dict(inputs))
        return self._add(signature, bound, expected, partial, description)

    def _add(
        self,
        signature: FunctionSignature,
        inputs: Dict[str, Any],
        expected: Any,
        partial: bool,
        description: Optional[str] = None,
    ) -> Assertion:
        if partial:
            _check_partial_fields(signature, expected)
        assertion = Assertion(
            signature=signature,
            inputs=inputs,
            expected=expected,
            partial=partial,
            description=description or self._description,
        )
        self._assertions.append(assertion)
        return assertion

    def declarations(self) -> List[Tuple[FunctionSignature, List[AlignmentExample]]]:
        """Example sets per signature, in first-declaration order."""
        grouped: Dict[str, Tuple[FunctionSignature, List[AlignmentExample]]] = {}
        for assertion in self._assertions:
            entry = grouped.setdefault(assertion.signature.fingerprint, (assertion.signature, []))
            entry[1].append(assertion.to_example())
        return list(grouped.values())

    async def verify(self, alignfn: Any) -> List[AssertionResult]:
        """
        Run every assertion against the live functions.

        Args:
            alignfn: An open AlignFn handle

        Returns:
            One result per assertion, in declaration order

        Verification calls are not appended as training records and do not
        feed the student's failure window.
        """
        results = []
        for assertion in self._assertions:
            fn = alignfn.register(assertion.signature)
            try:
                actual = await fn.engine.invoke(fn.signature, assertion.inputs, record=False)
            except AlignFnError as e:
                results.append(AssertionResult(assertion, passed=False, error=str(e)))
                continue

            actual_json = _decoder.to_jsonable(actual, assertion.signature.output)
            expected_json = _decoder.to_jsonable(assertion.expected, assertion.signature.output)
            if assertion.partial:
                passed = matches_partial(actual_json, expected_json)
            else:
                passed = matches_partial(actual_json, expected_json) and matches_partial(expected_json, actual_json)
            results.append(AssertionResult(assertion, passed=passed, actual=actual))

        failed = [r for r in results if not r.passed]
        logger.info(f"Verified {self.name}: {len(results) - len(failed)}/{len(results)} assertions passed")
        for result in failed:
            logger.warning(
                f"Assertion failed for {result.assertion.signature.name}"
                f" ({result.assertion.description or 'no description'}): "
                f"expected {result.assertion.expected!r}, got {result.error or repr(result.actual)}"
            )
        return results


def matches_partial(actual: Any, expected: Any) -> bool:
    """
    Subset match: every key in an expected mapping must be present and match,
    recursively. Non-mapping values must be equal.
    """
    if isinstance(expected, Mapping):
        if not isinstance(actual, Mapping):
            return False
        return all(key in actual and matches_partial(actual[key], value) for key, value in expected.items())
    if isinstance(expected, list):
        if not isinstance(actual, list) or len(actual) != len(expected):
            return False
        return all(matches_partial(a, e) for a, e in zip(actual, expected))
    return _strict_equal(actual, expected)


def _strict_equal(actual: Any, expected: Any) -> bool:
    # True == 1 in Python; a boolean field must not match an integer
    if isinstance(actual, bool) != isinstance(expected, bool):
        return False
    return actual == expected


def _signature_of(target: Union[FunctionSignature, Any]) -> FunctionSignature:
    if isinstance(target, FunctionSignature):
        return target
    signature = getattr(target, "signature", None)
    if isinstance(signature, FunctionSignature):
        return signature
    raise TypeError(f"Cannot declare alignment for {target!r}: not a patched function or signature")


def _check_partial_fields(signature: FunctionSignature, expected: Mapping[str, Any]) -> None:
    output = signature.output
    if output.kind != RECORD:
        raise TypeError(f"Partial assertions need a record output; {signature.name} returns {output.kind}")
    unknown = [key for key in expected if output.get_field(key) is None]
    if unknown:
        raise ValueError(f"Unknown fields for {signature.name}: {', '.join(unknown)}")
