"""
Token counting and usage records.

Async text tokenization over a background worker, with fallback heuristics.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Union

from .tokenizer_worker import (
    DEFAULT_ENCODING,
    TokenizerWorker,
    WorkerUnavailableError,
    estimate_text_tokens,
)

logger = logging.getLogger(__name__)

DEFAULT_RETRY_DELAY = 0.05  # seconds between readiness checks


@dataclass(frozen=True)
class TextUsage:
    """Token usage of one committed turn against a text model."""
    input_tokens: int
    output_tokens: int

    @property
    def total_tokens(self) -> int:
        """Total tokens used (input + output)."""
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class ImageUsage:
    """Number of images produced by an image generation model."""
    image_count: int


Usage = Union[TextUsage, ImageUsage]


class TokenizationError(Exception):
    """Raised when a text could not be tokenized and no estimate was supplied."""


class TokenizerCrashedError(TokenizationError):
    """Raised for requests pending when the background worker crashed."""


class TokenizerClosedError(TokenizationError):
    """Raised for requests pending when the counter was closed."""


WorkerFactory = Callable[
    [Callable[[Dict[str, Any]], None], Callable[[BaseException], None]],
    Any,
]


class TokenCounter:
    """Async facade over a single long-lived tokenizer worker.

    Requests are correlated with the worker's replies by an increasing integer
    id, so replies may arrive in any order. The worker is created lazily on
    the first non-empty request and reused until it crashes or the counter is
    closed. When no worker can be built, counts fall back to
    ``estimate_text_tokens``.
    """

    def __init__(
        self,
        worker_factory: Optional[WorkerFactory] = None,
        encoding_name: str = DEFAULT_ENCODING,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        heuristic_only: bool = False,
        cache_dir: Optional[str] = None,
    ):
        if worker_factory is None:
            def worker_factory(on_message, on_crash):
                return TokenizerWorker(on_message, on_crash, encoding_name=encoding_name, cache_dir=cache_dir)

        self._worker_factory = worker_factory
        self.encoding_name = encoding_name
        self.cache_dir = cache_dir
        self.retry_delay = retry_delay
        self.heuristic_only = heuristic_only

        self._worker: Optional[Any] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._generation = 0
        self._ready = False
        self._next_id = 0
        self._pending: Dict[int, asyncio.Future] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def ready(self) -> bool:
        return self._ready

    async def count_text_tokens(self, text: str) -> int:
        """Count the tokens in a text.

        Args:
            text: Text to tokenize

        Returns:
            Token count from the worker, or the heuristic estimate when no
            worker is available

        Raises:
            TokenizationError: If the worker reported a failure without an
                estimate, crashed, or was closed while the request was pending
        """
        if not text:
            return 0

        worker = self._ensure_worker()
        if worker is None:
            return estimate_text_tokens(text)

        request_id = self._next_id
        self._next_id += 1
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        while not self._ready:
            if self._worker is not worker:
                # Crashed or closed while waiting; the future is already rejected
                break
            await asyncio.sleep(self.retry_delay)
        else:
            worker.post({"id": request_id, "text": text})

        return await future

    def _ensure_worker(self) -> Optional[Any]:
        if self.heuristic_only:
            return None

        loop = asyncio.get_running_loop()
        if self._worker is not None and self._loop is not loop:
            # Futures bound to the old loop can no longer be resolved
            self._discard_worker(None)

        if self._worker is None:
            self._generation += 1
            generation = self._generation
            self._loop = loop

            def on_message(message: Dict[str, Any]) -> None:
                self._deliver(loop, self._handle_message, generation, message)

            def on_crash(error: BaseException) -> None:
                self._deliver(loop, self._handle_crash, generation, error)

            logger.info("Creating tokenizer worker")
            try:
                self._worker = self._worker_factory(on_message, on_crash)
            except WorkerUnavailableError as e:
                logger.warning("Tokenizer worker unavailable, using fallback estimation: %s", e)
                self.heuristic_only = True
                return None

        return self._worker

    @staticmethod
    def _deliver(loop: asyncio.AbstractEventLoop, callback, *args) -> None:
        try:
            loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:
            logger.debug("Dropping tokenizer message: event loop is closed")

    def _handle_message(self, generation: int, message: Dict[str, Any]) -> None:
        if generation != self._generation:
            return

        if message.get("type") == "ready":
            self._ready = True
            return

        request_id = message.get("id")
        future = self._pending.pop(request_id, None)
        if future is None:
            logger.warning("Received message for unknown request ID: %s", request_id)
            return
        if future.done():
            return

        count = message.get("count")
        error = message.get("error")
        valid_count = isinstance(count, int) and not isinstance(count, bool)

        if error:
            fallback_used = bool(message.get("fallbackUsed"))
            logger.warning(
                "Worker returned an error for request %s: %s%s",
                request_id,
                error,
                " (fallback used)" if fallback_used else "",
            )
            if fallback_used and valid_count:
                future.set_result(count)
            else:
                future.set_exception(TokenizationError(error))
        elif valid_count:
            future.set_result(count)
        else:
            future.set_exception(TokenizationError(f"Invalid response from worker for request {request_id}"))

    def _handle_crash(self, generation: int, error: BaseException) -> None:
        if generation != self._generation:
            return
        logger.error("Tokenizer worker error: %s", error)
        self._discard_worker(TokenizerCrashedError(f"Worker error: {error}"), terminate=False)

    def _discard_worker(self, reason: Optional[TokenizationError], terminate: bool = True) -> None:
        worker = self._worker
        self._worker = None
        self._ready = False
        self._generation += 1

        pending = self._pending
        self._pending = {}
        for future in pending.values():
            if reason is not None and not future.done():
                future.set_exception(reason)

        if terminate and worker is not None:
            worker.terminate()

    def close(self) -> None:
        """Terminate the worker and reject every outstanding request."""
        if self._worker is not None:
            logger.info("Terminating tokenizer worker")
        self._discard_worker(TokenizerClosedError("Tokenizer closed"))

    async def __aenter__(self) -> "TokenCounter":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()
