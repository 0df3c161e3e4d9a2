"""Bounded-concurrency dispatch of completion requests to local backends.

The dispatcher owes the network exactly one response per request id, so
``handle()`` never raises: every failure becomes an ``ErrorDetail``.

Admission is bounded by the number of distinct models with work in flight.
A request for a model that is already busy is admitted without taking a
new slot; the backend serializes or batches those itself.
"""

import logging
import time
from collections import Counter
from contextlib import contextmanager
from typing import Iterable, Iterator, Protocol

from .errors import ConcurrencyExceeded, ModelUnavailable, RequestError
from .messages import (
    BACKEND_ERROR,
    BackendResult,
    CompletionOptions,
    CompletionResult,
    ErrorDetail,
    ModelDescriptor,
    WorkRequest,
    WorkResponse,
)

logger = logging.getLogger(__name__)


class CompletionBackend(Protocol):
    async def complete(
        self,
        descriptor: ModelDescriptor,
        messages: list[dict],
        options: CompletionOptions,
    ) -> BackendResult:
        ...


class RequestDispatcher:
    """Maps work requests to backend calls. One instance per connection."""

    def __init__(
        self,
        backend: CompletionBackend,
        models: Iterable[ModelDescriptor],
        max_concurrency: int = 2,
        defaults: CompletionOptions = CompletionOptions(),
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.backend = backend
        self.models = {m.name: m for m in models}
        self.max_concurrency = max_concurrency
        self.defaults = defaults
        # Replays of an in-flight request id are counted, not merged
        self._active: Counter = Counter()
        self._model_load: Counter = Counter()

    @property
    def active_request_ids(self) -> frozenset:
        return frozenset(self._active)

    @property
    def active_models(self) -> frozenset:
        return frozenset(self._model_load)

    @contextmanager
    def _slot(self, request: WorkRequest) -> Iterator[ModelDescriptor]:
        """Admit a request and hold its slot until the block exits."""
        descriptor = self.models.get(request.model)
        if descriptor is None:
            raise ModelUnavailable(f"Model {request.model} not available")

        if (
            len(self._model_load) >= self.max_concurrency
            and request.model not in self._model_load
        ):
            raise ConcurrencyExceeded(
                f"Maximum concurrent models reached ({self.max_concurrency})"
            )

        self._active[request.request_id] += 1
        self._model_load[request.model] += 1
        try:
            yield descriptor
        finally:
            self._active[request.request_id] -= 1
            if self._active[request.request_id] <= 0:
                del self._active[request.request_id]
            self._model_load[request.model] -= 1
            if self._model_load[request.model] <= 0:
                del self._model_load[request.model]

    async def handle(self, request: WorkRequest) -> WorkResponse:
        """Run one request to completion. Never raises."""
        start = time.monotonic()
        try:
            with self._slot(request) as descriptor:
                logger.info(
                    "Request %s -> %s (%s)",
                    request.request_id, descriptor.name, descriptor.backend_type.value,
                )
                result = await self.backend.complete(
                    descriptor, request.messages, request.options(self.defaults)
                )
        except RequestError as e:
            logger.warning("Rejected request %s: %s", request.request_id, e)
            return WorkResponse(request.request_id, ErrorDetail(e.code, str(e)))
        except Exception as e:
            logger.exception("Error processing request %s for %s", request.request_id, request.model)
            return WorkResponse(request.request_id, ErrorDetail(BACKEND_ERROR, str(e) or type(e).__name__))

        elapsed_ms = int((time.monotonic() - start) * 1000)
        if isinstance(result, CompletionResult):
            logger.info(
                "Request %s done: %d chars, %d tokens, %dms",
                request.request_id, len(result.content), result.usage.total_tokens, elapsed_ms,
            )
        else:
            logger.warning("Request %s failed after %dms: %s", request.request_id, elapsed_ms, result.message)
        return WorkResponse(request.request_id, result)
