"""
LLM Service Module

Provides an abstraction layer for generative-model providers:
- Cloud: OpenAI (GPT models) - default
- Local: Ollama (Llama 3, Mistral, etc.)
- Cloud: Google Gemini (google-genai)
- Cloud: Mistral AI

Design Rationale:
- One `generate` call per prompt; the conversation chain builds prompts
- Every response carries token usage when the provider reports it, so the
  chain can log per-bot usage
- Provider failures surface as ProviderError; retries and timeouts belong to
  the provider clients

Usage:
    llm = LLMService(provider="ollama")
    response = llm.generate("What is machine learning?", max_tokens=200)
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Union

import ollama
from google import genai
from google.genai import types
from mistralai import Mistral
from openai import OpenAI

from config.settings import get_settings, LLMConfig
from chatbot_core.errors import ProviderError

logger = logging.getLogger(__name__)


@dataclass
class LLMResponse:
    """
    Standardized response from LLM providers.

    Attributes:
        content: The generated text response
        model: Model name used for generation
        usage: Token usage (prompt_tokens, completion_tokens, total_tokens)
        finish_reason: Why generation stopped
    """
    content: str
    model: str
    usage: Optional[Dict[str, int]] = None
    finish_reason: Optional[str] = None

    @property
    def total_tokens(self) -> int:
        if not self.usage:
            return 0
        total = self.usage.get("total_tokens")
        if total:
            return int(total)
        return int(self.usage.get("prompt_tokens", 0) or 0) + int(
            self.usage.get("completion_tokens", 0) or 0
        )

    def __str__(self) -> str:
        return self.content


def _chat_messages(prompt: str, system_prompt: Optional[str]) -> List[Dict[str, str]]:
    messages = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    messages.append({"role": "user", "content": prompt})
    return messages


def _usage(prompt_tokens: Optional[int], completion_tokens: Optional[int]) -> Dict[str, int]:
    prompt_tokens = prompt_tokens or 0
    completion_tokens = completion_tokens or 0
    return {
        "prompt_tokens": prompt_tokens,
        "completion_tokens": completion_tokens,
        "total_tokens": prompt_tokens + completion_tokens,
    }


class BaseLLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @abstractmethod
    def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
    ) -> LLMResponse:
        """
        Generate a response from the LLM.

        Args:
            prompt: User prompt
            system_prompt: Optional system instructions
            temperature: Creativity (0-1, lower = more deterministic)
            max_tokens: Maximum tokens in response

        Returns:
            LLMResponse object
        """
        pass

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Return the model name."""
        pass


class OllamaProvider(BaseLLMProvider):
    """
    Ollama provider for local LLM inference.

    Requirements:
    - Ollama installed: https://ollama.ai
    - Model pulled: ollama pull llama3
    """

    def __init__(self, model: str = "llama3", base_url: str = "http://localhost:11434"):
        self._model = model
        self._base_url = base_url.rstrip("/")
        self._client = None

        logger.info(f"Initializing OllamaProvider: model={model}, url={base_url}")

    def _get_client(self) -> ollama.Client:
        if self._client is None:
            self._client = ollama.Client(host=self._base_url)
            logger.info("Ollama client initialized")
        return self._client

    def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
    ) -> LLMResponse:
        options = {"temperature": temperature}
        if max_tokens:
            options["num_predict"] = max_tokens

        response = self._get_client().chat(
            model=self._model,
            messages=_chat_messages(prompt, system_prompt),
            options=options,
        )

        return LLMResponse(
            content=response["message"]["content"],
            model=self._model,
            usage=_usage(response.get("prompt_eval_count"), response.get("eval_count")),
            finish_reason=response.get("done_reason") or "stop",
        )

    @property
    def model_name(self) -> str:
        return self._model


class OpenAIProvider(BaseLLMProvider):
    """
    OpenAI provider for GPT models.

    Models:
    - gpt-4-turbo-preview: Default
    - gpt-4o-mini: Fast, cost-effective
    """

    def __init__(self, model: str = "gpt-4-turbo-preview", api_key: Optional[str] = None):
        self._model = model
        self._api_key = api_key
        self._client = None

        logger.info(f"Initializing OpenAIProvider: model={model}")

    def _get_client(self) -> OpenAI:
        if self._client is None:
            api_key = self._api_key or get_settings().llm.openai_api_key
            if not api_key:
                raise ProviderError(
                    "OpenAI API key not found. Set OPENAI_API_KEY environment variable.",
                    provider="openai",
                )
            self._client = OpenAI(api_key=api_key)
            logger.info("OpenAI client initialized")
        return self._client

    def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
    ) -> LLMResponse:
        kwargs = {
            "model": self._model,
            "messages": _chat_messages(prompt, system_prompt),
            "temperature": temperature,
        }
        if max_tokens:
            kwargs["max_tokens"] = max_tokens

        response = self._get_client().chat.completions.create(**kwargs)

        choice = response.choices[0]
        usage = None
        if response.usage:
            usage = {
                "prompt_tokens": response.usage.prompt_tokens,
                "completion_tokens": response.usage.completion_tokens,
                "total_tokens": response.usage.total_tokens,
            }
        return LLMResponse(
            content=choice.message.content or "",
            model=response.model,
            usage=usage,
            finish_reason=choice.finish_reason,
        )

    @property
    def model_name(self) -> str:
        return self._model


class GeminiProvider(BaseLLMProvider):
    """
    Google Gemini provider using the google-genai package.

    Models:
    - gemini-2.0-flash: Latest, fastest, recommended
    - gemini-1.5-pro: More capable, longer context
    """

    def __init__(self, model: str = "gemini-2.0-flash", api_key: Optional[str] = None):
        self._model = model
        self._api_key = api_key
        self._client = None

        logger.info(f"Initializing GeminiProvider: model={model}")

    def _get_client(self) -> genai.Client:
        if self._client is None:
            api_key = self._api_key or get_settings().llm.gemini_api_key
            if not api_key:
                raise ProviderError(
                    "Gemini API key not found. Set GEMINI_API_KEY environment variable.",
                    provider="gemini",
                )
            self._client = genai.Client(api_key=api_key)
            logger.info(f"Gemini client initialized with model: {self._model}")
        return self._client

    def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
    ) -> LLMResponse:
        config = types.GenerateContentConfig(
            temperature=temperature,
            system_instruction=system_prompt if system_prompt else None,
            max_output_tokens=max_tokens,
        )

        response = self._get_client().models.generate_content(
            model=self._model,
            contents=prompt,
            config=config,
        )

        usage = None
        metadata = getattr(response, "usage_metadata", None)
        if metadata is not None:
            usage = _usage(metadata.prompt_token_count, metadata.candidates_token_count)

        return LLMResponse(
            content=response.text or "",
            model=self._model,
            usage=usage,
            finish_reason="stop",
        )

    @property
    def model_name(self) -> str:
        return self._model


class MistralProvider(BaseLLMProvider):
    """
    Mistral AI cloud provider.

    Models:
    - mistral-small-latest: Fast, efficient
    - mistral-large-latest: Most capable
    """

    def __init__(self, model: str = "mistral-small-latest", api_key: Optional[str] = None):
        self._model = model
        self._api_key = api_key
        self._client = None

        logger.info(f"Initializing MistralProvider: model={model}")

    def _get_client(self) -> Mistral:
        if self._client is None:
            api_key = self._api_key or get_settings().llm.mistral_api_key
            if not api_key:
                raise ProviderError(
                    "Mistral API key not found. Set MISTRAL_API_KEY environment variable.",
                    provider="mistral",
                )
            self._client = Mistral(api_key=api_key)
            logger.info(f"Mistral client initialized with model: {self._model}")
        return self._client

    def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
    ) -> LLMResponse:
        response = self._get_client().chat.complete(
            model=self._model,
            messages=_chat_messages(prompt, system_prompt),
            temperature=temperature,
            max_tokens=max_tokens,
        )

        choice = response.choices[0]
        return LLMResponse(
            content=choice.message.content or "",
            model=self._model,
            usage={
                "prompt_tokens": response.usage.prompt_tokens,
                "completion_tokens": response.usage.completion_tokens,
                "total_tokens": response.usage.total_tokens,
            } if response.usage else None,
            finish_reason=choice.finish_reason,
        )

    @property
    def model_name(self) -> str:
        return self._model


class LLMService:
    """
    Main LLM Service with unified interface.

    Example:
        # Using default provider from config
        llm = LLMService()
        response = llm.generate("What is AI?")

        # Specify provider by name, or inject an instance
        llm = LLMService(provider="gemini")
        llm = LLMService(provider=my_provider)
    """

    def __init__(
        self,
        provider: Union[str, BaseLLMProvider, None] = None,
        config: Optional[LLMConfig] = None,
    ):
        """
        Initialize the LLM service.

        Args:
            provider: "ollama", "openai", "gemini", "mistral" or a provider
                instance (default from config)
            config: Optional LLMConfig instance
        """
        self.config = config or get_settings().llm

        if isinstance(provider, BaseLLMProvider):
            self._provider = provider
            self._provider_name = type(provider).__name__
        else:
            provider = provider or self.config.provider
            self._provider = self._build_provider(provider)
            self._provider_name = provider

        logger.info(f"LLMService initialized with {self._provider_name} provider")

    def _build_provider(self, provider: str) -> BaseLLMProvider:
        if provider == "ollama":
            return OllamaProvider(
                model=self.config.ollama_model,
                base_url=self.config.ollama_base_url,
            )
        if provider == "openai":
            return OpenAIProvider(
                model=self.config.openai_model,
                api_key=self.config.openai_api_key,
            )
        if provider == "gemini":
            return GeminiProvider(
                model=self.config.gemini_model,
                api_key=self.config.gemini_api_key,
            )
        if provider == "mistral":
            return MistralProvider(
                model=self.config.mistral_model,
                api_key=self.config.mistral_api_key,
            )
        raise ValueError(f"Unknown LLM provider: {provider}")

    def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> LLMResponse:
        """
        Generate a response from the LLM.

        Args:
            prompt: User prompt
            system_prompt: Optional system instructions
            temperature: Creativity (default from config)
            max_tokens: Maximum tokens in response (default from config)

        Returns:
            LLMResponse object

        Raises:
            ProviderError: If the provider call fails
        """
        try:
            return self._provider.generate(
                prompt=prompt,
                system_prompt=system_prompt,
                temperature=self.config.temperature if temperature is None else temperature,
                max_tokens=max_tokens or self.config.max_tokens,
            )
        except ProviderError:
            raise
        except Exception as e:
            logger.error(f"{self._provider_name} generation error: {e}")
            raise ProviderError(
                f"Generation failed: {e}", provider=self._provider_name
            ) from e

    @property
    def model_name(self) -> str:
        """Return the model name."""
        return self._provider.model_name

    @property
    def provider_name(self) -> str:
        """Return the provider name."""
        return self._provider_name
