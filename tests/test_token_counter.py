"""
Unit tests for the async token counter.

Tests request correlation, readiness queuing, fallbacks, crashes and teardown
against an in-memory worker.
"""

import asyncio
from unittest.mock import patch

import pytest

from chat_usage_meter.core.token_counter import (
    TokenCounter,
    TokenizationError,
    TokenizerClosedError,
    TokenizerCrashedError,
)
from chat_usage_meter.core.tokenizer_worker import WorkerUnavailableError


class FakeWorker:
    """Worker that records requests and lets the test reply by hand."""

    def __init__(self, on_message, on_crash):
        self.on_message = on_message
        self.on_crash = on_crash
        self.posted = []
        self.terminated = False

    def post(self, message):
        self.posted.append(message)

    def terminate(self):
        self.terminated = True


class FakeWorkerFactory:
    def __init__(self):
        self.workers = []

    def __call__(self, on_message, on_crash):
        worker = FakeWorker(on_message, on_crash)
        self.workers.append(worker)
        return worker


async def wait_until(condition, timeout=2.0):
    """Poll the event loop until condition() holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.001)


class TestHeuristicFallback:
    """Test counting without a background worker."""

    def test_empty_text_is_zero_without_worker(self):
        """Empty text never creates a worker."""
        factory = FakeWorkerFactory()
        counter = TokenCounter(worker_factory=factory)

        assert asyncio.run(counter.count_text_tokens("")) == 0
        assert factory.workers == []

    def test_unavailable_worker_uses_heuristic(self):
        """Without a worker, abcd counts as one token."""
        def factory(on_message, on_crash):
            raise WorkerUnavailableError("no threads here")

        counter = TokenCounter(worker_factory=factory)

        assert asyncio.run(counter.count_text_tokens("abcd")) == 1
        assert counter.heuristic_only is True

    def test_heuristic_only_counter(self):
        """A heuristic-only counter rounds up by quarters of UTF-16 length."""
        counter = TokenCounter(heuristic_only=True)

        async def run():
            return [
                await counter.count_text_tokens("abcd"),
                await counter.count_text_tokens("abcde"),
                await counter.count_text_tokens("\U0001F600"),
            ]

        # The emoji is two UTF-16 code units
        assert asyncio.run(run()) == [1, 2, 1]


class TestCorrelation:
    """Test the request/response protocol."""

    def test_out_of_order_responses_match_by_id(self):
        """Replies are matched to requests purely by id."""
        factory = FakeWorkerFactory()
        counter = TokenCounter(worker_factory=factory, retry_delay=0.001)

        async def run():
            first = asyncio.ensure_future(counter.count_text_tokens("hello"))
            second = asyncio.ensure_future(counter.count_text_tokens("world"))
            await wait_until(lambda: factory.workers)
            worker = factory.workers[0]
            worker.on_message({"type": "ready"})
            await wait_until(lambda: len(worker.posted) == 2)

            worker.on_message({"id": worker.posted[1]["id"], "count": 7})
            worker.on_message({"id": worker.posted[0]["id"], "count": 3})
            return await first, await second, worker.posted

        first, second, posted = asyncio.run(run())

        assert (first, second) == (3, 7)
        assert [message["text"] for message in posted] == ["hello", "world"]
        assert posted[0]["id"] < posted[1]["id"]

    def test_requests_wait_for_ready_signal(self):
        """Nothing is posted before the worker reports ready."""
        factory = FakeWorkerFactory()
        counter = TokenCounter(worker_factory=factory, retry_delay=0.001)

        async def run():
            task = asyncio.ensure_future(counter.count_text_tokens("queued"))
            await wait_until(lambda: factory.workers)
            await asyncio.sleep(0.02)
            worker = factory.workers[0]
            posted_before_ready = list(worker.posted)

            worker.on_message({"type": "ready"})
            await wait_until(lambda: worker.posted)
            worker.on_message({"id": worker.posted[0]["id"], "count": 2})
            return posted_before_ready, await task

        posted_before_ready, count = asyncio.run(run())

        assert posted_before_ready == []
        assert count == 2

    def test_worker_is_reused(self):
        """One worker serves every request."""
        factory = FakeWorkerFactory()
        counter = TokenCounter(worker_factory=factory, retry_delay=0.001)

        async def run():
            results = []
            for text in ("one", "two", "three"):
                task = asyncio.ensure_future(counter.count_text_tokens(text))
                await wait_until(lambda: factory.workers)
                worker = factory.workers[0]
                if not counter.ready:
                    worker.on_message({"type": "ready"})
                await wait_until(lambda: any(m["text"] == text for m in worker.posted))
                worker.on_message({"id": worker.posted[-1]["id"], "count": len(text)})
                results.append(await task)
            return results

        assert asyncio.run(run()) == [3, 3, 5]
        assert len(factory.workers) == 1

    def test_fallback_count_resolves(self):
        """A failure carrying a fallback estimate still resolves."""
        factory = FakeWorkerFactory()
        counter = TokenCounter(worker_factory=factory, retry_delay=0.001)

        async def run():
            task = asyncio.ensure_future(counter.count_text_tokens("text"))
            await wait_until(lambda: factory.workers)
            worker = factory.workers[0]
            worker.on_message({"type": "ready"})
            await wait_until(lambda: worker.posted)
            worker.on_message({
                "id": worker.posted[0]["id"],
                "count": 9,
                "error": "Tokenization failed: boom",
                "fallbackUsed": True,
            })
            return await task

        assert asyncio.run(run()) == 9

    def test_error_without_fallback_rejects(self):
        """A failure without an estimate rejects that request only."""
        factory = FakeWorkerFactory()
        counter = TokenCounter(worker_factory=factory, retry_delay=0.001)

        async def run():
            task = asyncio.ensure_future(counter.count_text_tokens("text"))
            await wait_until(lambda: factory.workers)
            worker = factory.workers[0]
            worker.on_message({"type": "ready"})
            await wait_until(lambda: worker.posted)
            worker.on_message({"id": worker.posted[0]["id"], "error": "no encoder"})
            await task

        with pytest.raises(TokenizationError, match="no encoder"):
            asyncio.run(run())

    def test_invalid_response_rejects(self):
        """A reply without a count is an error."""
        factory = FakeWorkerFactory()
        counter = TokenCounter(worker_factory=factory, retry_delay=0.001)

        async def run():
            task = asyncio.ensure_future(counter.count_text_tokens("text"))
            await wait_until(lambda: factory.workers)
            worker = factory.workers[0]
            worker.on_message({"type": "ready"})
            await wait_until(lambda: worker.posted)
            worker.on_message({"id": worker.posted[0]["id"], "count": "many"})
            await task

        with pytest.raises(TokenizationError, match="Invalid response"):
            asyncio.run(run())

    def test_unknown_response_id_is_ignored(self):
        """Replies for ids nobody waits on are dropped."""
        factory = FakeWorkerFactory()
        counter = TokenCounter(worker_factory=factory, retry_delay=0.001)

        async def run():
            task = asyncio.ensure_future(counter.count_text_tokens("text"))
            await wait_until(lambda: factory.workers)
            worker = factory.workers[0]
            worker.on_message({"type": "ready"})
            await wait_until(lambda: worker.posted)
            worker.on_message({"id": 999, "count": 1})
            worker.on_message({"id": worker.posted[0]["id"], "count": 4})
            return await task

        assert asyncio.run(run()) == 4


class TestCrashAndTeardown:
    """Test worker crashes and explicit teardown."""

    def test_crash_rejects_pending_and_recreates_worker(self):
        """A crash fails every pending request; the next call gets a new worker."""
        factory = FakeWorkerFactory()
        counter = TokenCounter(worker_factory=factory, retry_delay=0.001)

        async def run():
            first = asyncio.ensure_future(counter.count_text_tokens("a"))
            second = asyncio.ensure_future(counter.count_text_tokens("b"))
            await wait_until(lambda: factory.workers)
            worker = factory.workers[0]
            worker.on_message({"type": "ready"})
            await wait_until(lambda: len(worker.posted) == 2)

            worker.on_crash(RuntimeError("boom"))
            results = await asyncio.gather(first, second, return_exceptions=True)
            pending_after_crash = counter.pending_count

            third = asyncio.ensure_future(counter.count_text_tokens("c"))
            await wait_until(lambda: len(factory.workers) == 2)
            new_worker = factory.workers[1]
            new_worker.on_message({"type": "ready"})
            await wait_until(lambda: new_worker.posted)
            new_worker.on_message({"id": new_worker.posted[0]["id"], "count": 1})
            return results, pending_after_crash, await third

        results, pending_after_crash, third = asyncio.run(run())

        assert all(isinstance(result, TokenizerCrashedError) for result in results)
        assert pending_after_crash == 0
        assert third == 1

    def test_crash_while_waiting_for_ready(self):
        """Requests queued before readiness fail when the worker crashes."""
        factory = FakeWorkerFactory()
        counter = TokenCounter(worker_factory=factory, retry_delay=0.001)

        async def run():
            task = asyncio.ensure_future(counter.count_text_tokens("queued"))
            await wait_until(lambda: factory.workers)
            factory.workers[0].on_crash(RuntimeError("failed to load"))
            await task

        with pytest.raises(TokenizerCrashedError):
            asyncio.run(run())

    def test_messages_from_replaced_worker_are_ignored(self):
        """A crashed worker cannot resolve requests of its successor."""
        factory = FakeWorkerFactory()
        counter = TokenCounter(worker_factory=factory, retry_delay=0.001)

        async def run():
            first = asyncio.ensure_future(counter.count_text_tokens("a"))
            await wait_until(lambda: factory.workers)
            old = factory.workers[0]
            old.on_crash(RuntimeError("boom"))
            await asyncio.gather(first, return_exceptions=True)

            second = asyncio.ensure_future(counter.count_text_tokens("b"))
            await wait_until(lambda: len(factory.workers) == 2)
            old.on_message({"type": "ready"})
            await asyncio.sleep(0.01)
            ready_after_stale_signal = counter.ready

            new = factory.workers[1]
            new.on_message({"type": "ready"})
            await wait_until(lambda: new.posted)
            old.on_message({"id": new.posted[0]["id"], "count": 100})
            new.on_message({"id": new.posted[0]["id"], "count": 1})
            return ready_after_stale_signal, await second

        ready_after_stale_signal, count = asyncio.run(run())

        assert ready_after_stale_signal is False
        assert count == 1

    def test_close_rejects_outstanding_requests(self):
        """Teardown terminates the worker and fails pending requests."""
        factory = FakeWorkerFactory()
        counter = TokenCounter(worker_factory=factory, retry_delay=0.001)

        async def run():
            task = asyncio.ensure_future(counter.count_text_tokens("text"))
            await wait_until(lambda: factory.workers)
            worker = factory.workers[0]
            worker.on_message({"type": "ready"})
            await wait_until(lambda: worker.posted)
            counter.close()
            return await asyncio.gather(task, return_exceptions=True)

        (result,) = asyncio.run(run())

        assert isinstance(result, TokenizerClosedError)
        assert factory.workers[0].terminated is True
        assert counter.pending_count == 0

    def test_async_context_manager_closes(self):
        """Leaving the context closes the counter."""
        factory = FakeWorkerFactory()

        async def run():
            async with TokenCounter(worker_factory=factory, retry_delay=0.001) as counter:
                task = asyncio.ensure_future(counter.count_text_tokens("x"))
                await wait_until(lambda: factory.workers)
                worker = factory.workers[0]
                worker.on_message({"type": "ready"})
                await wait_until(lambda: worker.posted)
                worker.on_message({"id": worker.posted[0]["id"], "count": 1})
                await task
            return counter

        counter = asyncio.run(run())
        assert factory.workers[0].terminated is True
        assert counter.ready is False


class FakeEncoder:
    """Whitespace tokenizer standing in for a tiktoken encoding."""

    def encode(self, text):
        return text.split()


class TestThreadedWorker:
    """Test the counter against the real worker thread."""

    @patch("chat_usage_meter.core.tokenizer_worker.load_encoder")
    def test_counts_through_worker_thread(self, mock_load_encoder):
        """Requests cross to the worker thread and back."""
        mock_load_encoder.return_value = FakeEncoder()

        async def run():
            async with TokenCounter(retry_delay=0.001) as counter:
                return await asyncio.gather(
                    counter.count_text_tokens("one two three"),
                    counter.count_text_tokens("four"),
                    counter.count_text_tokens("<|endoftext|> five six"),
                )

        assert asyncio.run(run()) == [3, 1, 2]

    @patch("chat_usage_meter.core.tokenizer_worker.load_encoder")
    def test_missing_encoder_falls_back_in_worker(self, mock_load_encoder):
        """Without an encoder the worker answers with the heuristic."""
        mock_load_encoder.return_value = None

        async def run():
            async with TokenCounter(retry_delay=0.001) as counter:
                return await counter.count_text_tokens("abcdefgh")

        assert asyncio.run(run()) == 2

    @patch("chat_usage_meter.core.tokenizer_worker.load_encoder")
    def test_non_text_request_is_rejected_not_left_pending(self, mock_load_encoder):
        """A payload the worker cannot tokenize fails fast instead of hanging."""
        mock_load_encoder.return_value = FakeEncoder()

        async def run():
            async with TokenCounter(retry_delay=0.001) as counter:
                with pytest.raises(TokenizationError, match="Expected text"):
                    await asyncio.wait_for(counter.count_text_tokens({"lang": "py"}), timeout=5)
                after_error = await asyncio.wait_for(counter.count_text_tokens("still works"), timeout=5)
                return after_error, counter.pending_count

        assert asyncio.run(run()) == (2, 0)
