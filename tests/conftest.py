"""Shared pytest fixtures for promptbox unit tests.

The fixtures isolate every test from the developer's environment (provider
hosts, API keys, user configuration directory) and provide a small stand-in for
`requests.Response` so backend adapters can be exercised without a network.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

import pytest
import requests

from promptbox.llm.service import clear_context_size_cache


_PROVIDER_ENV = (
    "OLLAMA_HOST",
    "LM_STUDIO_HOST",
    "OPENAI_API_KEY",
    "OPENAI_KEY",
    "PROMPTBOX_MODEL_HOST",
    "XDG_CONFIG_HOME",
)


class FakeResponse:
    """Minimal streaming response compatible with the client's usage."""

    def __init__(
        self,
        lines: Iterable[str] = (),
        *,
        status_code: int = 200,
        text: str = "",
        reason: str = "OK",
        fail_after: Optional[int] = None,
    ) -> None:
        self.lines = list(lines)
        self.status_code = status_code
        self.text = text
        self.reason = reason
        self.fail_after = fail_after
        self.closed = False

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def iter_lines(self):
        for index, line in enumerate(self.lines):
            if self.fail_after is not None and index >= self.fail_after:
                raise requests.exceptions.ChunkedEncodingError("connection broken")
            yield line.encode("utf-8")

    def __enter__(self) -> "FakeResponse":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.closed = True


def ollama_lines(*fragments: str) -> list[str]:
    """JSON lines for an Ollama stream ending with a done marker."""
    lines = [json.dumps({"response": f, "done": False}) for f in fragments]
    lines.append(json.dumps({"response": "", "done": True}))
    return lines


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch: pytest.MonkeyPatch, tmp_path_factory: pytest.TempPathFactory):
    for name in _PROVIDER_ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("PROMPTBOX_CONFIG_DIR", str(tmp_path_factory.mktemp("user-config")))
    clear_context_size_cache()
    yield
    clear_context_size_cache()


@pytest.fixture
def recorded_posts(monkeypatch: pytest.MonkeyPatch):
    """Patch `requests.post` to replay queued responses and record calls."""
    calls: list[dict[str, Any]] = []
    queue: list[Any] = []

    def fake_post(url, headers=None, json=None, stream=False, timeout=None):
        calls.append({"url": url, "headers": headers, "json": json, "stream": stream})
        response = queue.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    monkeypatch.setattr(requests, "post", fake_post)
    fake_post.calls = calls  # type: ignore[attr-defined]
    fake_post.queue = queue  # type: ignore[attr-defined]
    return fake_post


@pytest.fixture
def write_template(tmp_path: Path) -> Callable[..., Path]:
    """Write `<tmp>/promptbox/<name>.pb.toml` and return its path."""

    def _write(name: str, body: str) -> Path:
        template_dir = tmp_path / "promptbox"
        template_dir.mkdir(exist_ok=True)
        path = template_dir / f"{name}.pb.toml"
        path.write_text(body, encoding="utf-8")
        return path

    return _write
