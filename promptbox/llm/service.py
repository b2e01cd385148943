"""Streaming dispatch and model introspection for the LLM layer.

Architectural role:
    Provides the canonical entrypoints the core engine uses to talk to a model:
    `stream_model_response` for generation and `model_context_size` for context
    window discovery. Transport details live in `promptbox.llm.client`.

Concurrency model:
    The backend request runs on a producer thread that pushes fragments onto a
    bounded `queue.Queue` (`CHANNEL_CAPACITY` items). The caller consumes the
    returned generator on its own thread. A slow consumer fills the queue and the
    producer blocks, so the network read loop is throttled instead of buffering
    without bound.

Termination:
    The producer always finishes by enqueueing an end marker, carrying the error
    if the request failed. The consumer re-raises that error after draining the
    fragments that arrived before it. Closing the generator early signals the
    producer, which stops reading and exits without raising.

Determinism:
    Fragment order equals backend emission order. Fragment boundaries depend on
    the backend.
"""

from __future__ import annotations

import logging
import queue
import threading
from typing import Iterator, Optional, Sequence

from promptbox.api.multimodal.file_input_manager import ImageData
from promptbox.llm.client import get_backend, send_request
from promptbox.llm.provider_config import ModelOptions


logger = logging.getLogger(__name__)

CHANNEL_CAPACITY = 32

# Poll interval used by the producer while the queue is full, so it notices a
# consumer that has stopped listening.
_PUT_POLL_SECONDS = 0.1


class _EndOfStream:
    __slots__ = ("error",)

    def __init__(self, error: Optional[BaseException] = None) -> None:
        self.error = error


def stream_model_response(
    options: ModelOptions,
    prompt: str,
    system: Optional[str] = None,
    images: Sequence[ImageData] = (),
    *,
    capacity: int = CHANNEL_CAPACITY,
) -> Iterator[str]:
    """Issue one backend request and yield its text fragments as they arrive.

    Args:
        options: Resolved model options.
        prompt: Final prompt text.
        system: Optional system instruction.
        images: Image attachments.
        capacity: Size of the handoff queue between producer and consumer.

    Yields:
        Non-empty text fragments in backend order.

    Raises:
        BackendError: Re-raised in the consumer after earlier fragments have been
        yielded.

    Notes:
        The request starts on the first `next()`; the result is consumed once.
        Iterating a second call re-executes the request from scratch.
    """
    channel: "queue.Queue[object]" = queue.Queue(maxsize=capacity)
    closed = threading.Event()

    def emit(fragment: str) -> bool:
        while not closed.is_set():
            try:
                channel.put(fragment, timeout=_PUT_POLL_SECONDS)
                return True
            except queue.Full:
                continue
        return False

    def finish(error: Optional[BaseException]) -> None:
        # Best effort: once the consumer is gone nobody reads the marker.
        while not closed.is_set():
            try:
                channel.put(_EndOfStream(error), timeout=_PUT_POLL_SECONDS)
                return
            except queue.Full:
                continue

    def produce() -> None:
        try:
            send_request(options, prompt, system, images, emit)
        except BaseException as exc:  # handed to the consumer thread
            finish(exc)
        else:
            finish(None)

    producer = threading.Thread(target=produce, name="promptbox-request", daemon=True)
    producer.start()

    try:
        while True:
            item = channel.get()
            if isinstance(item, _EndOfStream):
                producer.join()
                if item.error is not None:
                    raise item.error
                return
            yield item  # type: ignore[misc]
    finally:
        closed.set()


# Native context sizes keyed by (provider, host, model).
_CONTEXT_SIZES: dict[tuple[str, str, str], int] = {}


def model_context_size(options: ModelOptions) -> int:
    """Return the native context window of the selected model.

    Results are cached per (provider, host, model) for the life of the process.
    """
    key = (options.provider, options.api_host, options.full_model_name)
    if key not in _CONTEXT_SIZES:
        _CONTEXT_SIZES[key] = get_backend(options).context_size(options)
    return _CONTEXT_SIZES[key]


def clear_context_size_cache() -> None:
    _CONTEXT_SIZES.clear()
