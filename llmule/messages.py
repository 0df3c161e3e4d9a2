"""Wire messages and data model for the LLMule network protocol.

Frames are UTF-8 JSON objects carrying a ``type`` discriminator. This module
owns the conversion between those frames and the typed objects the session
and dispatcher work with.
"""

import json
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from .errors import InvalidRequest, ProtocolError

# Rough heuristic used when a backend does not report usage
CHARS_PER_TOKEN = 4


class BackendType(str, Enum):
    """Kinds of local backend we know how to talk to."""
    OLLAMA = "ollama"
    LMSTUDIO = "lmstudio"
    EXO = "exo"


class MessageType(str, Enum):
    """Frame ``type`` values used on the wire."""
    REGISTER = "register"
    REGISTERED = "registered"
    PING = "ping"
    PONG = "pong"
    COMPLETION_REQUEST = "completion_request"
    COMPLETION_RESPONSE = "completion_response"
    ERROR = "error"
    AUTH_ERROR = "auth_error"
    DISCONNECT = "disconnect"


@dataclass(frozen=True)
class ModelDescriptor:
    """One model exposed by a local backend."""
    name: str
    backend_type: BackendType


@dataclass(frozen=True)
class Credential:
    """API key used to authenticate with the network."""
    token: str

    def __repr__(self) -> str:
        return "Credential(token=***)"


@dataclass(frozen=True)
class CompletionOptions:
    """Generation parameters passed through to a backend."""
    temperature: float = 0.7
    max_tokens: int = 4096


@dataclass
class WorkRequest:
    """A completion request received from the network."""
    request_id: str
    model: str
    messages: list[dict[str, Any]]
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None

    @classmethod
    def from_wire(cls, data: dict) -> "WorkRequest":
        """Build a request from a ``completion_request`` frame.

        Raises:
            ProtocolError: if the frame has no usable requestId.
            InvalidRequest: if the body is missing a field or has the wrong shape.
        """
        request_id = data.get("requestId")
        if not request_id or not isinstance(request_id, str):
            raise ProtocolError("completion_request missing requestId")

        model = data.get("model")
        if not model or not isinstance(model, str):
            raise InvalidRequest(f"completion_request {request_id} missing model")

        messages = data.get("messages")
        if not isinstance(messages, list) or not messages:
            raise InvalidRequest(f"completion_request {request_id} has no messages")
        for msg in messages:
            if not isinstance(msg, dict) or "role" not in msg or "content" not in msg:
                raise InvalidRequest(f"completion_request {request_id} has a malformed message")

        temperature = data.get("temperature")
        max_tokens = data.get("max_tokens")
        try:
            temperature = float(temperature) if temperature is not None else None
            max_tokens = int(max_tokens) if max_tokens is not None else None
        except (TypeError, ValueError):
            raise InvalidRequest(f"completion_request {request_id} has invalid generation parameters")
        if max_tokens is not None and max_tokens < 1:
            raise InvalidRequest(f"completion_request {request_id} has max_tokens < 1")

        return cls(
            request_id=request_id,
            model=model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
        )

    def options(self, defaults: CompletionOptions) -> CompletionOptions:
        """Resolve generation parameters, falling back to ``defaults``."""
        return CompletionOptions(
            temperature=self.temperature if self.temperature is not None else defaults.temperature,
            max_tokens=self.max_tokens if self.max_tokens is not None else defaults.max_tokens,
        )


@dataclass
class Usage:
    """Token usage counters."""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def to_wire(self) -> dict:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


def estimate_tokens(text: str) -> int:
    """Estimate a token count from text length."""
    if not text:
        return 0
    return max(1, (len(text) + CHARS_PER_TOKEN - 1) // CHARS_PER_TOKEN)


def estimate_usage(messages: list[dict[str, Any]], content: str) -> Usage:
    """Synthesize usage counters for backends that do not report them."""
    prompt = sum(estimate_tokens(str(m.get("content", ""))) for m in messages)
    completion = estimate_tokens(content)
    return Usage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=prompt + completion)


def usage_from_openai(data: Any) -> Optional[Usage]:
    """Read an OpenAI-style ``usage`` object, or None if absent or empty."""
    if not isinstance(data, dict) or not data:
        return None
    prompt = int(data.get("prompt_tokens") or 0)
    completion = int(data.get("completion_tokens") or 0)
    total = int(data.get("total_tokens") or (prompt + completion))
    if not (prompt or completion or total):
        return None
    return Usage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


@dataclass
class CompletionResult:
    """Normalized completion returned by any backend."""
    content: str
    model: str
    usage: Usage
    finish_reason: str = "stop"
    id: str = field(default_factory=lambda: f"chatcmpl-{uuid.uuid4().hex[:24]}")
    created: int = field(default_factory=lambda: int(time.time()))

    def to_wire(self) -> dict:
        """Render as an OpenAI ``chat.completion`` object."""
        return {
            "id": self.id,
            "object": "chat.completion",
            "created": self.created,
            "model": self.model,
            "choices": [{
                "index": 0,
                "message": {"role": "assistant", "content": self.content},
                "finish_reason": self.finish_reason,
            }],
            "usage": self.usage.to_wire(),
        }


# Machine-readable error codes sent in completion_response.error.code
MODEL_UNAVAILABLE = "model_unavailable"
CONCURRENCY_EXCEEDED = "concurrency_exceeded"
BACKEND_ERROR = "backend_error"
INVALID_REQUEST = "invalid_request"

_ERROR_TYPES = {
    MODEL_UNAVAILABLE: "invalid_request_error",
    INVALID_REQUEST: "invalid_request_error",
    CONCURRENCY_EXCEEDED: "rate_limit_error",
    BACKEND_ERROR: "server_error",
}


@dataclass(frozen=True)
class ErrorDetail:
    """A per-request failure, reported back to the network."""
    code: str
    message: str

    @property
    def type(self) -> str:
        return _ERROR_TYPES.get(self.code, "server_error")

    def to_wire(self) -> dict:
        return {"error": {"message": self.message, "type": self.type, "code": self.code}}


BackendResult = Union[CompletionResult, ErrorDetail]


@dataclass
class WorkResponse:
    """Exactly one of these is owed to the network per request id."""
    request_id: str
    result: BackendResult

    @property
    def ok(self) -> bool:
        return isinstance(self.result, CompletionResult)

    def to_wire(self) -> dict:
        return {
            "type": MessageType.COMPLETION_RESPONSE.value,
            "requestId": self.request_id,
            "response": self.result.to_wire(),
        }


def register_message(
    api_key: str,
    models: list[ModelDescriptor],
    user_id: str = "",
    provider: str = "",
) -> dict:
    """Build the ``register`` frame sent right after the connection opens."""
    msg: dict[str, Any] = {
        "type": MessageType.REGISTER.value,
        "apiKey": api_key,
        "models": [m.name for m in models],
    }
    if user_id:
        msg["userId"] = user_id
    if provider:
        msg["provider"] = provider
    return msg


def simple_message(msg_type: MessageType, **fields: Any) -> dict:
    """Build a frame with only a type and optional flat fields."""
    return {"type": msg_type.value, **fields}


def encode(message: dict) -> str:
    return json.dumps(message, ensure_ascii=False)


def decode(raw: Union[str, bytes]) -> dict:
    """Parse an inbound frame.

    Raises:
        ProtocolError: if the frame is not a JSON object with a string ``type``.
    """
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError(f"Frame is not valid UTF-8: {e}")
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Invalid JSON frame: {e}")
    if not isinstance(data, dict) or not isinstance(data.get("type"), str):
        raise ProtocolError("Frame has no type")
    return data
