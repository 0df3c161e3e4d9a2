"""Adapters for local LLM backends.

Each adapter knows how to list the models a backend serves and how to run a
non-streaming chat completion against it. Completions never raise for
per-request failures: they return either a ``CompletionResult`` or an
``ErrorDetail`` so the caller can always answer the network.

Supported backends:
- Ollama (native /api/chat)
- LM Studio (OpenAI-compatible /chat/completions)
- EXO (OpenAI-compatible /v1/chat/completions)
"""

import logging
from typing import Any, Optional, Protocol

import httpx

from .errors import BackendError
from .messages import (
    BACKEND_ERROR,
    BackendResult,
    BackendType,
    CompletionOptions,
    CompletionResult,
    ErrorDetail,
    ModelDescriptor,
    Usage,
    estimate_usage,
    usage_from_openai,
)

logger = logging.getLogger(__name__)


class BackendAdapter(Protocol):
    """Contract every backend adapter implements."""

    backend_type: BackendType

    async def list_models(self) -> list[ModelDescriptor]:
        ...

    async def complete(
        self,
        model: str,
        messages: list[dict[str, Any]],
        options: CompletionOptions,
    ) -> BackendResult:
        ...

    async def is_available(self) -> bool:
        ...

    async def close(self) -> None:
        ...


class HTTPBackend:
    """Shared HTTP plumbing for backend adapters."""

    backend_type: BackendType
    display_name = "backend"
    # Path (relative to base_url) answered with 2xx when the service is up
    health_path = ""

    def __init__(
        self,
        base_url: str,
        timeout: float = 120.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not base_url:
            raise ValueError(f"{self.display_name} URL is required")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.client = client or httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(
                max_keepalive_connections=5,
                max_connections=10,
                keepalive_expiry=30.0,
            ),
        )

    async def close(self) -> None:
        """Close the HTTP client. Call on shutdown."""
        await self.client.aclose()

    async def is_available(self) -> bool:
        """Check if the backend answers at all."""
        try:
            response = await self.client.get(f"{self.base_url}{self.health_path}", timeout=5.0)
            return response.is_success
        except httpx.HTTPError:
            return False

    async def list_models(self) -> list[ModelDescriptor]:
        """List models, or an empty list if the backend is not running."""
        try:
            names = await self._fetch_model_names()
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            logger.info("%s not detected at %s (%s)", self.display_name, self.base_url, e)
            return []
        logger.info("Found %d %s models", len(names), self.display_name)
        return [ModelDescriptor(name=n, backend_type=self.backend_type) for n in names]

    async def complete(
        self,
        model: str,
        messages: list[dict[str, Any]],
        options: CompletionOptions,
    ) -> BackendResult:
        """Run a completion and normalize the outcome."""
        logger.debug(
            "Sending request to %s: model=%s messages=%d temperature=%s max_tokens=%s",
            self.display_name, model, len(messages), options.temperature, options.max_tokens,
        )
        try:
            return await self._complete(model, messages, options)
        except httpx.TimeoutException:
            logger.warning("%s request timed out after %ss", self.display_name, self.timeout)
            return ErrorDetail(BACKEND_ERROR, f"{self.display_name} error: request timed out")
        except httpx.ConnectError:
            logger.warning("Could not connect to %s at %s", self.display_name, self.base_url)
            return ErrorDetail(BACKEND_ERROR, f"{self.display_name} error: could not connect")
        except httpx.HTTPError as e:
            logger.warning("%s HTTP error: %s", self.display_name, e)
            return ErrorDetail(BACKEND_ERROR, f"{self.display_name} error: {e}")
        except BackendError as e:
            logger.warning("%s error: %s", self.display_name, e)
            return ErrorDetail(BACKEND_ERROR, f"{self.display_name} error: {e}")

    async def _post_json(self, url: str, payload: dict) -> dict:
        response = await self.client.post(url, json=payload, timeout=self.timeout)
        if not response.is_success:
            error_text = response.text[:500]  # Truncate error for safety
            logger.warning("%s returned %d: %s", self.display_name, response.status_code, error_text)
            raise BackendError(f"server returned {response.status_code}")
        try:
            data = response.json()
        except ValueError:
            raise BackendError("malformed JSON response")
        if not isinstance(data, dict):
            raise BackendError("malformed response")
        return data

    async def _get_json(self, url: str) -> Any:
        response = await self.client.get(url, timeout=10.0)
        response.raise_for_status()
        return response.json()

    async def _fetch_model_names(self) -> list[str]:
        raise NotImplementedError

    async def _complete(
        self,
        model: str,
        messages: list[dict[str, Any]],
        options: CompletionOptions,
    ) -> CompletionResult:
        raise NotImplementedError


class OllamaBackend(HTTPBackend):
    """Ollama's native chat API."""

    backend_type = BackendType.OLLAMA
    display_name = "Ollama"
    health_path = "/api/version"

    async def _fetch_model_names(self) -> list[str]:
        data = await self._get_json(f"{self.base_url}/api/tags")
        return [m["name"] for m in data.get("models", [])]

    async def _complete(self, model, messages, options):
        data = await self._post_json(
            f"{self.base_url}/api/chat",
            {
                "model": model,
                "messages": messages,
                "stream": False,
                "options": {
                    "temperature": options.temperature,
                    "num_predict": options.max_tokens,
                },
            },
        )
        message = data.get("message")
        if not isinstance(message, dict) or "content" not in message:
            raise BackendError("response has no message")
        content = message.get("content") or ""

        # Ollama reports counts natively as prompt_eval_count / eval_count
        prompt = data.get("prompt_eval_count")
        completion = data.get("eval_count")
        if prompt is not None or completion is not None:
            prompt, completion = int(prompt or 0), int(completion or 0)
            usage = Usage(prompt, completion, prompt + completion)
        else:
            usage = estimate_usage(messages, content)

        return CompletionResult(
            content=content,
            model=data.get("model", model),
            usage=usage,
            finish_reason=data.get("done_reason") or "stop",
        )


class OpenAICompatibleBackend(HTTPBackend):
    """Backends speaking the OpenAI chat completions format."""

    # Paths relative to base_url
    models_path = "/models"
    completions_path = "/chat/completions"

    @property
    def health_path(self) -> str:
        return self.models_path

    async def _fetch_model_names(self) -> list[str]:
        data = await self._get_json(f"{self.base_url}{self.models_path}")
        return [m["id"] for m in data.get("data", [])]

    async def _complete(self, model, messages, options):
        data = await self._post_json(
            f"{self.base_url}{self.completions_path}",
            {
                "model": model,
                "messages": messages,
                "temperature": options.temperature,
                "max_tokens": options.max_tokens,
                "stream": False,
            },
        )
        choices = data.get("choices")
        if not choices or not isinstance(choices[0], dict):
            raise BackendError("empty response")
        choice = choices[0]
        message = choice.get("message") or {}
        content = message.get("content") or ""

        usage = usage_from_openai(data.get("usage")) or estimate_usage(messages, content)

        result = CompletionResult(
            content=content,
            model=data.get("model") or model,
            usage=usage,
            finish_reason=choice.get("finish_reason") or "stop",
        )
        if data.get("id"):
            result.id = data["id"]
        return result


class LMStudioBackend(OpenAICompatibleBackend):
    """LM Studio server; ``base_url`` already includes ``/v1``."""

    backend_type = BackendType.LMSTUDIO
    display_name = "LM Studio"


class ExoBackend(OpenAICompatibleBackend):
    """EXO cluster; ``base_url`` is the bare host."""

    backend_type = BackendType.EXO
    display_name = "EXO"
    models_path = "/v1/models"
    completions_path = "/v1/chat/completions"


BACKEND_CLASSES: dict[BackendType, type[HTTPBackend]] = {
    BackendType.OLLAMA: OllamaBackend,
    BackendType.LMSTUDIO: LMStudioBackend,
    BackendType.EXO: ExoBackend,
}
