"""
Invocation Engine

Runs one call of a patched function end to end:

    route → examples → prompt → provider (with backoff) → decode
    (with bounded repair) → training record → scheduler

Failure policy:
- ProviderError (after retries) and DecodeError (after repairs) are the only
  errors a caller of a patched function ever sees.
- StorageError never fails a call: reads fall back to zero-shot prompts,
  writes are logged and dropped.
- A training record is appended only once a validated value exists, so a
  cancelled call leaves nothing behind.
"""

from typing import Any, Dict, Optional

from .config.config_manager import ConfigManager
from .distillation.alignment_store import AlignmentStore
from .distillation.models import TrainingRecord
from .distillation.scheduler import DistillationScheduler
from .distillation.state_machine import DistillationState
from .errors import DecodeError, OutputValidationError, ProviderError, StorageError, wrap_provider_exception
from .output_decoder import OutputDecoder
from .prompt_builder import PromptBuilder
from .router import ModelRouter, Route
from .signature import FunctionSignature
from .utils.exponential_backoff import ExponentialBackoff
from .utils.logger import SignatureLogger, get_logger

logger = get_logger(__name__)


class InvocationEngine:
    """
    Executes patched-function calls against the teacher or student model.

    The provider is anything with ``async complete(model, prompt, schema=None) -> str``.
    """

    def __init__(
        self,
        store: AlignmentStore,
        provider: Any,
        scheduler: Optional[DistillationScheduler] = None,
        router: Optional[ModelRouter] = None,
        prompt_builder: Optional[PromptBuilder] = None,
        backoff: Optional[ExponentialBackoff] = None,
        max_repair_attempts: Optional[int] = None,
        provider_max_retries: Optional[int] = None,
    ):
        self.store = store
        self.provider = provider
        self.scheduler = scheduler
        self.router = router or ModelRouter(store)
        self.prompt_builder = prompt_builder or PromptBuilder()
        self.decoder: OutputDecoder = self.prompt_builder.decoder
        self.backoff = backoff or ExponentialBackoff(
            base_delay=ConfigManager.get("PROVIDER_BACKOFF_BASE_DELAY"),
            max_delay=ConfigManager.get("PROVIDER_BACKOFF_MAX_DELAY"),
        )
        self.max_repair_attempts = (
            max_repair_attempts if max_repair_attempts is not None else ConfigManager.get("MAX_REPAIR_ATTEMPTS")
        )
        self.provider_max_retries = provider_max_retries or ConfigManager.get("PROVIDER_MAX_RETRIES")

    def register(self, signature: FunctionSignature) -> DistillationState:
        """
        Make the signature known to the store.

        Raises:
            SignatureMismatchError: If the fingerprint is stored for a
                different signature
        """
        try:
            return self.store.register_signature(signature)
        except StorageError as e:
            SignatureLogger(signature.name, signature.fingerprint).storage_degraded("register", str(e))
            return DistillationState.COLD

    async def invoke(self, signature: FunctionSignature, inputs: Dict[str, Any], record: bool = True) -> Any:
        """
        Execute one call.

        Args:
            signature: The patched function's signature
            inputs: Bound arguments keyed by input name
            record: Append a training record and feed the scheduler. Off for
                    verification runs, which must not count toward distillation.

        Returns:
            The decoded value of the declared output type

        Raises:
            ProviderError: Provider failed after retries
            DecodeError: Output never validated within the repair budget
        """
        slog = SignatureLogger(signature.name, signature.fingerprint)
        route = self.router.route(signature.fingerprint)

        # The student was trained on zero-shot prompts
        examples = [] if route.is_student else self._load_examples(signature, slog)
        prompt = self.prompt_builder.build(signature, examples, inputs)
        slog.debug(f"calling {route.model} ({route.role}, {route.state.value}, {len(examples)} examples)")

        value = await self._decode_with_repair(signature, route, prompt, slog, record)

        if not record:
            return value

        training_record = TrainingRecord(
            inputs=self._jsonable_inputs(signature, inputs),
            output=self.decoder.to_jsonable(value, signature.output),
            model=route.model,
            role=route.role,
        )
        appended = self._append_record(signature, training_record, slog)

        if self.scheduler is not None:
            if route.is_student:
                self.scheduler.record_student_outcome(signature.fingerprint, True)
            if appended:
                await self.scheduler.on_record_appended(signature)

        return value

    def report_mismatch(self, signature: FunctionSignature) -> bool:
        """
        Count a caller-detected wrong answer against the serving student.

        Returns:
            True if the report demoted the signature
        """
        route = self.router.route(signature.fingerprint)
        if not route.is_student or self.scheduler is None:
            logger.debug(f"Mismatch for {signature.name} ignored: served by {route.role}")
            return False
        return self.scheduler.report_mismatch(signature.fingerprint)

    async def _decode_with_repair(
        self,
        signature: FunctionSignature,
        route: Route,
        prompt: str,
        slog: SignatureLogger,
        record: bool = True,
    ) -> Any:
        """
        Call the model and decode, re-prompting with the validation failure.

        Issues at most ``max_repair_attempts`` repair prompts after the first
        attempt, each to the same model.
        """
        schema = signature.output.to_json_schema()
        raw = await self._call_provider(route.model, prompt, schema)

        reason = ""
        for attempt in range(self.max_repair_attempts + 1):
            try:
                return self.decoder.decode(raw, signature.output)
            except OutputValidationError as e:
                reason = str(e)

            if attempt == self.max_repair_attempts:
                break

            slog.repair_attempt(attempt + 1, self.max_repair_attempts, reason)
            repair_prompt = self.prompt_builder.build_repair(prompt, raw, reason)
            raw = await self._call_provider(route.model, repair_prompt, schema)

        slog.decode_failed(route.model, reason)
        if record:
            try:
                self.store.record_failure(signature, route.model, route.role, raw, reason)
            except StorageError as e:
                slog.storage_degraded("record_failure", str(e))

        if record and route.is_student and self.scheduler is not None:
            self.scheduler.record_student_outcome(signature.fingerprint, False)

        raise DecodeError(
            f"{signature.name}: output from {route.model} did not match the declared type "
            f"after {self.max_repair_attempts} repair attempts: {reason}",
            raw_output=raw,
            reason=reason,
            attempts=self.max_repair_attempts,
        )

    async def _call_provider(self, model: str, prompt: str, schema: Dict[str, Any]) -> str:
        try:
            return await self.backoff.with_retry(
                self.provider.complete,
                model,
                prompt,
                schema,
                max_retries=self.provider_max_retries,
            )
        except ProviderError:
            raise
        except Exception as e:
            raise wrap_provider_exception(e, context=model)

    def _load_examples(self, signature: FunctionSignature, slog: SignatureLogger):
        try:
            return self.store.get_examples(signature)
        except StorageError as e:
            slog.storage_degraded("get_examples", str(e))
            return []

    def _append_record(self, signature: FunctionSignature, record: TrainingRecord, slog: SignatureLogger) -> bool:
        try:
            self.store.append_training_record(signature, record)
            return True
        except StorageError as e:
            slog.storage_degraded("append_training_record", str(e))
            return False

    def _jsonable_inputs(self, signature: FunctionSignature, inputs: Dict[str, Any]) -> Dict[str, Any]:
        return {
            param.name: self.decoder.to_jsonable(inputs.get(param.name), param.type)
            for param in signature.inputs
        }
