"""
Background tokenizer worker.

Owns a tiktoken encoder on a dedicated thread and answers correlated requests.
"""

import logging
import math
import os
import queue
import re
import threading
import time
from typing import Any, Callable, Dict, Optional

import tiktoken

logger = logging.getLogger(__name__)

DEFAULT_ENCODING = "o200k_base"
READY_SIGNAL = {"type": "ready"}
TIKTOKEN_CACHE_ENV = "TIKTOKEN_CACHE_DIR"
DEFAULT_JOIN_TIMEOUT = 1.0  # seconds terminate() waits for the thread

_SPECIAL_TOKENS = re.compile(r"<\|endoftext\|>|<\|im_start\|>|<\|im_end\|>")

# Sentinel that stops the worker loop
_STOP = object()


class WorkerUnavailableError(RuntimeError):
    """Raised when a background tokenizer cannot be constructed."""


def estimate_text_tokens(text: str) -> int:
    """Heuristic token count: one token per four UTF-16 code units."""
    if not text:
        return 0
    utf16_length = len(text.encode("utf-16-le")) // 2
    return math.ceil(utf16_length / 4)


def handle_request(encoder: Optional[Any], message: Any) -> Optional[Dict[str, Any]]:
    """Build the response for one tokenization request.

    Args:
        encoder: tiktoken Encoding, or None if it failed to load
        message: Request of the form ``{"id": int, "text": str}``

    Returns:
        Response dict, or None for a request without an id
    """
    if not isinstance(message, dict):
        logger.warning("Tokenizer worker received unknown message format: %r", message)
        return None

    request_id = message.get("id")
    text = message.get("text")
    if request_id is None:
        logger.warning("Tokenizer worker received unknown message format: %r", message)
        return None
    if not isinstance(text, str):
        logger.warning("Tokenizer worker received non-text payload for request %s", request_id)
        return {"id": request_id, "error": f"Expected text, got {type(text).__name__}"}

    if encoder is None:
        return {
            "id": request_id,
            "count": estimate_text_tokens(text),
            "error": "Encoder failed to initialize",
            "fallbackUsed": True,
        }

    if not text:
        return {"id": request_id, "count": 0}

    try:
        cleaned = _SPECIAL_TOKENS.sub("", text)
        return {"id": request_id, "count": len(encoder.encode(cleaned))}
    except Exception as e:
        logger.error("Tokenization failed for request %s: %s", request_id, e)
        return {
            "id": request_id,
            "count": estimate_text_tokens(text),
            "error": f"Tokenization failed: {e}",
            "fallbackUsed": True,
        }


def load_encoder(encoding_name: str, cache_dir: Optional[str] = None) -> Optional[Any]:
    """Load a tiktoken encoding, None if it cannot be loaded.

    tiktoken downloads the BPE file on a cold cache. With ``cache_dir`` set,
    files are read from (and stored in) that directory, so a pre-filled
    directory makes the load work offline.
    """
    if cache_dir:
        os.environ[TIKTOKEN_CACHE_ENV] = cache_dir
    try:
        return tiktoken.get_encoding(encoding_name)
    except Exception as e:
        logger.error("Failed to initialize tiktoken with %s: %s", encoding_name, e)
        return None


class TokenizerWorker:
    """Tokenizer running on its own daemon thread.

    Messages in both directions are plain dicts. Replies and the ready signal
    are delivered through ``on_message``; an unexpected failure of the loop
    itself is delivered once through ``on_crash`` and ends the thread.
    """

    def __init__(
        self,
        on_message: Callable[[Dict[str, Any]], None],
        on_crash: Callable[[BaseException], None],
        encoding_name: str = DEFAULT_ENCODING,
        cache_dir: Optional[str] = None,
    ):
        self.encoding_name = encoding_name
        self.cache_dir = cache_dir
        self._on_message = on_message
        self._on_crash = on_crash
        self._inbox: "queue.Queue[Any]" = queue.Queue()
        try:
            self._thread = threading.Thread(target=self._run, name="tokenizer-worker", daemon=True)
            self._thread.start()
        except RuntimeError as e:
            raise WorkerUnavailableError(f"Cannot start tokenizer thread: {e}") from e

    def post(self, message: Dict[str, Any]) -> None:
        """Queue a request for the worker."""
        self._inbox.put(message)

    def terminate(self, timeout: Optional[float] = DEFAULT_JOIN_TIMEOUT) -> None:
        """Stop the worker and wait up to ``timeout`` seconds for its thread.

        Requests queued before the stop are still served first. Pass ``timeout=0`` to return
        without waiting.
        """
        self._inbox.put(_STOP)
        if timeout and self._thread is not threading.current_thread():
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning("Tokenizer worker did not stop within %.1f s", timeout)

    @property
    def alive(self) -> bool:
        return self._thread.is_alive()

    def _run(self) -> None:
        try:
            started = time.perf_counter()
            encoder = load_encoder(self.encoding_name, self.cache_dir)
            logger.info(
                "Tokenizer worker ready (%s) in %.2f ms",
                self.encoding_name,
                (time.perf_counter() - started) * 1000,
            )
            self._on_message(dict(READY_SIGNAL))

            while True:
                message = self._inbox.get()
                if message is _STOP:
                    return
                response = handle_request(encoder, message)
                if response is not None:
                    self._on_message(response)
        except Exception as e:
            logger.error("Tokenizer worker crashed: %s", e)
            self._on_crash(e)
