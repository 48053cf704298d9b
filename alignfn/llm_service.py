"""
LLM Service Module

This module provides an async OpenAI client wrapper used as the model provider
for patched functions. It works against any OpenAI-compatible endpoint, so the
teacher can be a cloud model and the student a fine-tuned or local one.

Features:
- One completion per call, model chosen per call by the router
- Optional structured outputs (JSON schema) for record-shaped results
- Provider SDK errors wrapped into the engine's ProviderError hierarchy
"""

from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI, OpenAIError

from .config.config_manager import ConfigManager
from .errors import wrap_provider_exception
from .utils.logger import get_logger

logger = get_logger(__name__)


class LLMService:
    """
    A wrapper around the async OpenAI client with a configurable base URL.

    Any object exposing ``async complete(model, prompt, schema=None) -> str``
    can stand in for this class as the engine's provider.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        default_temperature: Optional[float] = None,
        default_max_tokens: Optional[int] = None,
        use_structured_output: Optional[bool] = None,
        system_prompt: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
    ):
        """
        Initialize the LLM Service.

        Args:
            base_url: The base URL for the API endpoint (defaults to OPENAI_BASE_URL).
                      Local inference servers work too, e.g. Ollama at
                      http://localhost:11434/v1
            api_key: The API key (defaults to OPENAI_API_KEY). Local servers
                     usually accept any placeholder value.
            default_temperature: Sampling temperature (defaults to TEMPERATURE)
            default_max_tokens: Maximum tokens to generate (defaults to MAX_TOKENS)
            use_structured_output: Send a JSON schema response format for
                                   object outputs (defaults to USE_STRUCTURED_OUTPUT)
            system_prompt: Optional system message sent before every prompt
            client: Pre-built client, mainly for tests
        """
        self.base_url = base_url or ConfigManager.get("OPENAI_BASE_URL")
        self.api_key = api_key or ConfigManager.get("OPENAI_API_KEY") or "not-needed"

        self.default_temperature = (
            default_temperature if default_temperature is not None else ConfigManager.get("TEMPERATURE")
        )
        self.default_max_tokens = default_max_tokens or ConfigManager.get("MAX_TOKENS")
        self.use_structured_output = (
            use_structured_output
            if use_structured_output is not None
            else ConfigManager.get("USE_STRUCTURED_OUTPUT")
        )
        self.system_prompt = system_prompt

        self._is_local = "localhost" in self.base_url or "127.0.0.1" in self.base_url

        self.client = client or AsyncOpenAI(base_url=self.base_url, api_key=self.api_key)

    async def complete(
        self,
        model: str,
        prompt: str,
        schema: Optional[Dict[str, Any]] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        """
        Generate a completion.

        Args:
            model: Model to call
            prompt: The user prompt
            schema: JSON schema of the expected output, used for structured
                    outputs when enabled and the schema is an object
            temperature: Override sampling temperature
            max_tokens: Override maximum tokens

        Returns:
            The raw response text (empty string if the model returned none)

        Raises:
            ProviderError: Categorized provider failure
        """
        messages: List[Dict[str, str]] = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})
        messages.append({"role": "user", "content": prompt})

        kwargs: Dict[str, Any] = {}
        if self.use_structured_output and schema and schema.get("type") == "object":
            kwargs["response_format"] = {
                "type": "json_schema",
                "json_schema": {"name": "output", "schema": schema, "strict": False},
            }

        try:
            response = await self.client.chat.completions.create(
                model=model,
                messages=messages,
                temperature=temperature if temperature is not None else self.default_temperature,
                max_tokens=max_tokens or self.default_max_tokens,
                **kwargs,
            )
        except (OpenAIError, ConnectionError, TimeoutError) as e:
            raise wrap_provider_exception(e, context=model)

        if not response.choices:
            logger.warning(f"Model {model} returned no choices")
            return ""

        content = response.choices[0].message.content or ""
        usage = getattr(response, "usage", None)
        if usage is not None:
            logger.debug(
                f"Completion from {model}: {usage.prompt_tokens} prompt + "
                f"{usage.completion_tokens} completion tokens"
            )
        return content

    def get_config(self) -> Dict[str, Any]:
        """Get current configuration (excluding sensitive API key)."""
        return {
            "base_url": self.base_url,
            "temperature": self.default_temperature,
            "max_tokens": self.default_max_tokens,
            "use_structured_output": self.use_structured_output,
            "is_local": self._is_local,
        }

    def is_local(self) -> bool:
        """Check if currently using local inference."""
        return self._is_local
