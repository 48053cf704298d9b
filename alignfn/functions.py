"""
Patched Functions

Explicit registration handle for LLM-backed functions:

    async with AlignFn() as af:
        classify = af.register(FunctionSignature(
            name="classify_sentiment",
            prompt="Classify the sentiment of the given text",
            inputs=[("text", T.string())],
            output=T.literal("positive", "negative", "neutral"),
        ))
        af.declare_alignment(suite)
        label = await classify("I love this")

AlignFn owns the store, the provider, the scheduler and the engine for the
lifetime of the process; nothing is implicit global state.
"""

import asyncio
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .alignment import AlignmentSuite
from .distillation.alignment_store import AlignmentStore
from .distillation.scheduler import DistillationScheduler
from .distillation.state_machine import DistillationState
from .engine import InvocationEngine
from .errors import StorageError
from .fine_tuning.openai_fine_tuner import OpenAIFineTuner
from .llm_service import LLMService
from .signature import FunctionSignature
from .utils.logger import get_logger

logger = get_logger(__name__)


class AlignedFunction:
    """A registered signature, callable like an async function."""

    def __init__(self, engine: InvocationEngine, signature: FunctionSignature):
        self.engine = engine
        self.signature = signature

    @property
    def name(self) -> str:
        return self.signature.name

    @property
    def fingerprint(self) -> str:
        return self.signature.fingerprint

    async def __call__(self, *args, **kwargs) -> Any:
        inputs = self.signature.bind(args, kwargs)
        return await self.engine.invoke(self.signature, inputs)

    async def map(self, items: Iterable[Any], return_exceptions: bool = False) -> List[Any]:
        """
        Evaluate the function over many inputs concurrently.

        Each item is the single argument for one-input functions, otherwise a
        mapping of keyword arguments or a tuple/list of positional ones.
        """
        calls = [self._call_for(item) for item in items]
        return await asyncio.gather(*calls, return_exceptions=return_exceptions)

    def _call_for(self, item: Any):
        if len(self.signature.inputs) == 1:
            return self(item)
        if isinstance(item, Mapping):
            return self(**item)
        if isinstance(item, (list, tuple)):
            return self(*item)
        raise TypeError(f"{self.name}() takes {len(self.signature.inputs)} arguments; got a single {type(item).__name__}")

    def report_mismatch(self) -> bool:
        """
        Report that the last answer was wrong. Counts against the student
        when it is serving; ignored otherwise.

        Returns:
            True if the report demoted the student
        """
        return self.engine.report_mismatch(self.signature)

    def state(self) -> DistillationState:
        return self.engine.store.get_state(self.signature)

    def __repr__(self) -> str:
        return f"<AlignedFunction {self.name} [{self.fingerprint[:8]}]>"


class AlignFn:
    """
    Process-wide handle for patched functions.

    Features:
    - Explicit open/close of the alignment store
    - Signature registration (idempotent per fingerprint)
    - Alignment declaration from an AlignmentSuite
    - Background distillation, resumed across restarts
    """

    def __init__(
        self,
        store: Optional[AlignmentStore] = None,
        provider: Any = None,
        fine_tuner: Any = None,
        database_url: Optional[str] = None,
        **scheduler_options: Any,
    ):
        """
        Args:
            store: Alignment store (defaults to one at DATABASE_URL)
            provider: Model provider (defaults to LLMService)
            fine_tuner: Fine-tuning client (defaults to OpenAIFineTuner)
            database_url: Used when no store is given
            **scheduler_options: Passed to DistillationScheduler (threshold,
                window, min_calls, failure_rate_threshold, poll_interval)
        """
        self.store = store or AlignmentStore(database_url)
        self.provider = provider
        self.fine_tuner = fine_tuner
        self.scheduler_options = scheduler_options

        self.scheduler: Optional[DistillationScheduler] = None
        self.engine: Optional[InvocationEngine] = None
        self._functions: Dict[str, AlignedFunction] = {}

    async def open(self) -> "AlignFn":
        """Open the store, wire the engine and resume any in-flight jobs."""
        if self.engine is not None:
            return self

        self.store.open()

        if self.provider is None:
            self.provider = LLMService()
        if self.fine_tuner is None:
            self.fine_tuner = OpenAIFineTuner(client=getattr(self.provider, "client", None))

        self.scheduler = DistillationScheduler(self.store, self.fine_tuner, **self.scheduler_options)
        self.engine = InvocationEngine(self.store, self.provider, scheduler=self.scheduler)

        resumed = await self.scheduler.resume_pending_jobs()
        if resumed:
            logger.info(f"Resumed {resumed} fine-tuning jobs")
        return self

    async def close(self) -> None:
        """Stop background work and close the store."""
        if self.scheduler is not None:
            await self.scheduler.close()
        self.store.close()
        self.engine = None
        self.scheduler = None
        self._functions.clear()

    async def __aenter__(self) -> "AlignFn":
        return await self.open()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def register(self, signature: FunctionSignature) -> AlignedFunction:
        """
        Register a signature and return its callable.

        Raises:
            SignatureMismatchError: If the fingerprint is stored for a
                different signature
        """
        engine = self._require_engine()
        fn = self._functions.get(signature.fingerprint)
        if fn is None:
            engine.register(signature)
            fn = AlignedFunction(engine, signature)
            self._functions[signature.fingerprint] = fn
        return fn

    def declare_alignment(self, suite: AlignmentSuite) -> Dict[str, Optional[DistillationState]]:
        """
        Replace each asserted signature's example set with the suite's.

        Returns:
            Resulting state per signature name (None if the store was unavailable)
        """
        self._require_engine()
        states: Dict[str, Optional[DistillationState]] = {}
        for signature, examples in suite.declarations():
            self.register(signature)
            try:
                states[signature.name] = self.store.declare_alignment(signature, examples)
            except StorageError as e:
                logger.warning(f"Alignment for {signature.name} not stored: {e}")
                states[signature.name] = None
        return states

    @property
    def functions(self) -> List[AlignedFunction]:
        return list(self._functions.values())

    async def drain(self) -> None:
        """Wait for background distillation work to settle."""
        if self.scheduler is not None:
            await self.scheduler.drain()

    def _require_engine(self) -> InvocationEngine:
        if self.engine is None:
            raise RuntimeError("AlignFn is not open; use 'await af.open()' or 'async with AlignFn()'")
        return self.engine
