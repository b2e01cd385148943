"""Provider-specific transport client for LLM requests.

Architectural role:
    Executes streaming HTTP requests against the configured model backend and
    decodes its incremental output into plain text fragments. Each backend is an
    adapter object that knows its request envelope, its response framing, and how
    to discover a model's native context window.

Model invocation flow:
    `service.stream_model_response` -> `send_request(options, ..., emit)` ->
    adapter selected by `options.provider` -> decoded fragments pushed to `emit`.

Response framing:
    - Ollama: one JSON object per line, final object carries `"done": true`.
    - OpenAI-compatible (OpenAI, LM Studio): server-sent events, `data: [DONE]`
      terminator. Some servers just close the body instead.
    Both are reduced to "fragment" and "end-of-stream".

Retry behavior:
    No retry loop is implemented. Each HTTP call is attempted once with
    `REQUEST_TIMEOUT` seconds of connect/read timeout.

Failure handling model:
    Every failure is raised as one of the `BackendError` subclasses:
    - connection/timeout/broken stream -> `BackendTransportFailure`
    - non-success HTTP status -> `BackendModelFailure` with status and body
    - undecodable chunk -> `BackendProtocolFailure`
    - in-stream `error` object -> `BackendModelFailure`
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional, Sequence

import requests

from promptbox.api.multimodal.file_input_manager import ImageData
from promptbox.core.errors import (
    BackendModelFailure,
    BackendProtocolFailure,
    BackendTransportFailure,
)
from promptbox.llm.provider_config import (
    LM_STUDIO,
    OLLAMA,
    OPENAI,
    ModelOptions,
    OutputFormat,
)


logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 120

# Used when a backend does not publish a model's context size.
DEFAULT_CONTEXT_SIZE = 2048

# First matching prefix wins, so more specific families come first. Every
# family routed to OpenAI by model name has an entry here.
OPENAI_CONTEXT_SIZES = (
    ("gpt-5", 400000),
    ("gpt-4.1", 1047576),
    ("gpt-4o", 128000),
    ("gpt-4-turbo", 128000),
    ("gpt-4-1106", 128000),
    ("gpt-4-0125", 128000),
    ("gpt-4-32k", 32768),
    ("gpt-4", 8192),
    ("gpt-3.5-turbo-instruct", 4096),
    ("gpt-3.5-turbo", 16385),
    ("chatgpt-", 128000),
    ("o1", 128000),
    ("o3", 200000),
    ("o4", 200000),
)

# Callback receiving each decoded fragment. Returning False means the consumer
# has gone away and the read loop should stop.
Emit = Callable[[str], bool]


class Backend(ABC):
    """Contract implemented once per backend protocol."""

    name: str

    @abstractmethod
    def build_request(
        self,
        options: ModelOptions,
        prompt: str,
        system: Optional[str],
        images: Sequence[ImageData],
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        """Return `(url, headers, json_payload)` for a streaming generate call."""
        raise NotImplementedError

    @abstractmethod
    def decode_line(self, line: str) -> tuple[Optional[str], bool]:
        """Decode one framed line into `(fragment_or_None, stream_finished)`."""
        raise NotImplementedError

    @abstractmethod
    def context_size(self, options: ModelOptions) -> int:
        """Return the model's native context window in tokens."""
        raise NotImplementedError

    # -------------------------------------------------

    def _parse_json(self, raw: str) -> dict[str, Any]:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise BackendProtocolFailure(
                self.name, f"Could not decode response chunk: {raw[:200]!r}"
            ) from exc

        if not isinstance(data, dict):
            raise BackendProtocolFailure(
                self.name, f"Unexpected response chunk: {raw[:200]!r}"
            )

        error = data.get("error")
        if error:
            if isinstance(error, dict):
                error = error.get("message") or json.dumps(error)
            raise BackendModelFailure(self.name, str(error), body=raw)

        return data


# =========================================================
# OLLAMA
# =========================================================

class OllamaBackend(Backend):
    """Ollama `/api/generate` endpoint with JSON-lines streaming."""

    name = OLLAMA

    def build_request(self, options, prompt, system, images):
        model_options: dict[str, Any] = {
            "temperature": options.temperature,
            "top_p": options.top_p,
            "top_k": options.top_k,
            "repeat_penalty": options.frequency_penalty,
            "num_predict": options.max_tokens,
            "stop": list(options.stop),
        }
        if options.context.limit is not None:
            model_options["num_ctx"] = options.context.limit

        payload: dict[str, Any] = {
            "model": options.full_model_name,
            "prompt": prompt,
            "stream": True,
            "options": {k: v for k, v in model_options.items() if v is not None},
        }
        if system:
            payload["system"] = system
        if options.format is OutputFormat.JSON:
            payload["format"] = "json"
        if images:
            payload["images"] = [image.base64() for image in images]

        url = f"{options.api_host}/api/generate"
        return url, {"Content-Type": "application/json"}, payload

    def decode_line(self, line):
        data = self._parse_json(line)

        fragment = data.get("response", "")
        if not isinstance(fragment, str):
            raise BackendProtocolFailure(self.name, f"Non-text response field: {line[:200]!r}")

        return (fragment or None), bool(data.get("done"))

    def context_size(self, options):
        """Read `num_ctx` from the model's declared parameters.

        Models whose Modelfile does not set `num_ctx` run with Ollama's default
        of 2048 tokens.
        """
        url = f"{options.api_host}/api/show"
        response = _post(self.name, url, {"name": options.full_model_name}, stream=False)
        data = self._parse_json(response.text)

        parameters = data.get("parameters") or ""
        for line in parameters.split("\n"):
            if not line.startswith("num_ctx"):
                continue
            value = line[len("num_ctx"):].strip()
            try:
                return int(value)
            except ValueError as exc:
                raise BackendProtocolFailure(
                    self.name, f"Invalid num_ctx parameter: {value!r}"
                ) from exc

        logger.info(
            "Model %s declares no num_ctx; assuming %d",
            options.full_model_name,
            DEFAULT_CONTEXT_SIZE,
        )
        return DEFAULT_CONTEXT_SIZE


# =========================================================
# OPENAI-COMPATIBLE (OpenAI, LM Studio)
# =========================================================

class OpenAICompatibleBackend(Backend):
    """Chat completions endpoint with server-sent-event streaming."""

    def __init__(self, name: str) -> None:
        self.name = name

    def build_request(self, options, prompt, system, images):
        messages: list[dict[str, Any]] = []
        if system:
            messages.append({"role": "system", "content": system})

        if images:
            content: Any = [{"type": "text", "text": prompt}]
            content.extend(
                {"type": "image_url", "image_url": {"url": image.data_url()}}
                for image in images
            )
        else:
            content = prompt
        messages.append({"role": "user", "content": content})

        payload: dict[str, Any] = {
            "model": options.full_model_name,
            "messages": messages,
            "temperature": options.temperature,
            "stream": True,
        }
        optional = {
            "top_p": options.top_p,
            "frequency_penalty": options.frequency_penalty,
            "presence_penalty": options.presence_penalty,
            "max_tokens": options.max_tokens,
        }
        payload.update({k: v for k, v in optional.items() if v is not None})
        if options.stop:
            payload["stop"] = list(options.stop)
        if options.format is OutputFormat.JSON:
            payload["response_format"] = {"type": "json_object"}

        headers = {"Content-Type": "application/json"}
        if options.openai_key and self.name == OPENAI:
            headers["Authorization"] = f"Bearer {options.openai_key}"
        elif self.name == OPENAI:
            logger.warning("No OpenAI API key configured; the request will likely be rejected")

        url = f"{options.api_host}/v1/chat/completions"
        return url, headers, payload

    def decode_line(self, line):
        line = line.strip()

        # Blank keep-alives and SSE comments carry no data.
        if not line or line.startswith(":"):
            return None, False
        if line.startswith("event:"):
            return None, False

        if line.startswith("data:"):
            line = line[len("data:"):].strip()
        if line == "[DONE]":
            return None, True

        data = self._parse_json(line)

        choices = data.get("choices") or []
        if not choices:
            return None, False

        choice = choices[0]
        delta = choice.get("delta") or {}
        fragment = delta.get("content")
        if fragment is None and "text" in choice:
            fragment = choice["text"]
        if fragment is not None and not isinstance(fragment, str):
            raise BackendProtocolFailure(self.name, f"Non-text delta: {line[:200]!r}")

        return (fragment or None), False

    def context_size(self, options):
        model = options.full_model_name

        if self.name == OPENAI:
            for prefix, size in OPENAI_CONTEXT_SIZES:
                if model.startswith(prefix):
                    return size
            logger.info("Unknown OpenAI model %s; assuming %d tokens", model, DEFAULT_CONTEXT_SIZE)
            return DEFAULT_CONTEXT_SIZE

        url = f"{options.api_host}/api/v0/models/{model}"
        try:
            response = requests.get(url, timeout=REQUEST_TIMEOUT)
        except requests.exceptions.RequestException as err:
            raise BackendTransportFailure(self.name, str(err)) from err

        if response.status_code == 404:
            logger.info(
                "%s does not publish context size for %s; assuming %d",
                self.name,
                model,
                DEFAULT_CONTEXT_SIZE,
            )
            return DEFAULT_CONTEXT_SIZE
        _raise_for_status(self.name, response)

        data = self._parse_json(response.text)
        size = data.get("max_context_length")
        if isinstance(size, int) and size > 0:
            return size
        return DEFAULT_CONTEXT_SIZE


BACKENDS: dict[str, Backend] = {
    OLLAMA: OllamaBackend(),
    LM_STUDIO: OpenAICompatibleBackend(LM_STUDIO),
    OPENAI: OpenAICompatibleBackend(OPENAI),
}


def get_backend(options: ModelOptions) -> Backend:
    return BACKENDS[options.provider]


# =========================================================
# TRANSPORT
# =========================================================

def _raise_for_status(provider: str, response: requests.Response) -> None:
    if response.ok:
        return
    body = response.text
    raise BackendModelFailure(
        provider,
        response.reason or "request failed",
        status=response.status_code,
        body=body,
    )


def _post(
    provider: str,
    url: str,
    payload: dict[str, Any],
    *,
    headers: Optional[dict[str, str]] = None,
    stream: bool,
) -> requests.Response:
    try:
        response = requests.post(
            url,
            headers=headers,
            json=payload,
            stream=stream,
            timeout=REQUEST_TIMEOUT,
        )
    except requests.exceptions.RequestException as err:
        raise BackendTransportFailure(provider, f"Could not reach {url}: {err}") from err

    _raise_for_status(provider, response)
    return response


def send_request(
    options: ModelOptions,
    prompt: str,
    system: Optional[str],
    images: Sequence[ImageData],
    emit: Emit,
) -> None:
    """Send one streaming request and push decoded fragments to `emit`.

    Args:
        options: Resolved model options; `options.provider` selects the adapter.
        prompt: Final prompt text.
        system: Optional system instruction text.
        images: Image attachments for multimodal models.
        emit: Fragment sink. Returning False stops reading early.

    Raises:
        BackendTransportFailure, BackendModelFailure, BackendProtocolFailure.

    Ordering:
        Fragments are emitted in backend order as soon as each line arrives.
        Empty fragments are not emitted.
    """
    backend = get_backend(options)
    url, headers, payload = backend.build_request(options, prompt, system, images)

    logger.info("Sending request to %s model %s", backend.name, options.full_model_name)

    with _post(backend.name, url, payload, headers=headers, stream=True) as response:
        try:
            # Split raw bytes on \r and \n only. Decoded text would also break
            # on U+2028, U+0085 and friends, which JSON allows inside strings.
            for raw in response.iter_lines():
                if not raw:
                    continue

                try:
                    line = raw.decode("utf-8")
                except UnicodeDecodeError as exc:
                    raise BackendProtocolFailure(
                        backend.name, f"Response chunk is not UTF-8: {raw[:200]!r}"
                    ) from exc

                fragment, finished = backend.decode_line(line)
                if fragment and not emit(fragment):
                    logger.info("Consumer closed; abandoning %s stream", backend.name)
                    return
                if finished:
                    break
        except requests.exceptions.RequestException as err:
            raise BackendTransportFailure(backend.name, f"Stream interrupted: {err}") from err

    logger.info("%s stream finished", backend.name)
