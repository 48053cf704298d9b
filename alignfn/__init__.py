"""
alignfn - LLM-backed typed functions with alignment-driven distillation.

Declare a function by its signature, back it with a teacher model, assert
its behaviour with alignment examples, and let a fine-tuned student take
over once enough validated calls have accumulated.
"""

from .alignment import AlignmentSuite, AssertionResult
from .distillation import AlignmentStore, DistillationScheduler, DistillationState
from .engine import InvocationEngine
from .errors import (
    AlignFnError,
    DecodeError,
    DistillationJobError,
    OutputValidationError,
    ProviderError,
    SignatureMismatchError,
    StorageError,
)
from .functions import AlignedFunction, AlignFn
from .llm_service import LLMService
from .output_decoder import OutputDecoder
from .prompt_builder import PromptBuilder
from .router import ModelRouter, Route
from .signature import FunctionSignature, T, TypeDescriptor, fingerprint

__version__ = "0.1.0"

__all__ = [
    "AlignFn",
    "AlignFnError",
    "AlignedFunction",
    "AlignmentStore",
    "AlignmentSuite",
    "AssertionResult",
    "DecodeError",
    "DistillationJobError",
    "DistillationScheduler",
    "DistillationState",
    "FunctionSignature",
    "InvocationEngine",
    "LLMService",
    "ModelRouter",
    "OutputDecoder",
    "OutputValidationError",
    "PromptBuilder",
    "ProviderError",
    "Route",
    "SignatureMismatchError",
    "StorageError",
    "T",
    "TypeDescriptor",
    "fingerprint",
]
