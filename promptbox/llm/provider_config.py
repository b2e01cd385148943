"""Provider and model-option configuration for the LLM layer.

Architectural role:
    Defines the immutable `ModelOptions` parameter set handed to a backend and
    the pure folding functions that build it from configuration files, template
    model blocks, and CLI flags.

Precedence (highest first):
    CLI flag > template model block > configuration files > environment >
    backend defaults. Each layer is applied with `fold_model_options`, which
    only overwrites fields the layer actually sets.

Provider routing:
    `ModelOptions.provider` resolves which backend adapter handles a request,
    using the explicit `model_host` first, then a `provider/` model-name prefix,
    then the OpenAI model-name families, and finally Ollama.

Determinism:
    Deterministic for a fixed process environment. Environment lookups happen in
    `environment_defaults`, never at import time.
"""

from __future__ import annotations

import dataclasses
import enum
import os
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional


# Provider identifiers accepted by `--model-host` and `model_host` config keys.
OLLAMA = "ollama"
LM_STUDIO = "lm-studio"
OPENAI = "openai"

PROVIDERS = {
    OLLAMA: {
        "url": "http://localhost:11434",
        "host_env": "OLLAMA_HOST",
    },
    LM_STUDIO: {
        "url": "http://localhost:1234",
        "host_env": "LM_STUDIO_HOST",
    },
    OPENAI: {
        "url": "https://api.openai.com",
        "host_env": None,
    },
}

DEFAULT_MODEL = "llama3"
DEFAULT_RESERVE_OUTPUT = 256

_OPENAI_MODEL_PREFIXES = ("gpt-", "chatgpt-", "o1", "o3", "o4")


class OverflowKeep(str, enum.Enum):
    """Which side of the free-form content survives truncation.

    `START` keeps the trailing portion (content is dropped from the start);
    `END` keeps the leading portion (content is dropped from the end).
    """

    START = "start"
    END = "end"


class OutputFormat(str, enum.Enum):
    JSON = "json"


@dataclass(frozen=True)
class ContextOptions:
    limit: Optional[int] = None
    keep: OverflowKeep = OverflowKeep.END
    reserve_output: int = DEFAULT_RESERVE_OUTPUT


@dataclass(frozen=True)
class ModelOptions:
    """Final parameter set for one backend request. Never mutated."""

    model: str = DEFAULT_MODEL
    model_host: Optional[str] = None
    ollama_host: Optional[str] = None
    lm_studio_host: Optional[str] = None
    openai_key: Optional[str] = None
    temperature: float = 0.0
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None
    stop: tuple[str, ...] = ()
    max_tokens: Optional[int] = None
    format: Optional[OutputFormat] = None
    context: ContextOptions = field(default_factory=ContextOptions)

    @property
    def provider(self) -> str:
        """Backend adapter name this request is routed to."""
        if self.model_host:
            return normalize_provider(self.model_host)

        prefix, sep, _ = self.model.partition("/")
        if sep and prefix in PROVIDERS:
            return prefix

        if self.model.startswith(_OPENAI_MODEL_PREFIXES):
            return OPENAI

        return OLLAMA

    @property
    def full_model_name(self) -> str:
        """Model name as sent on the wire, without any `provider/` prefix."""
        prefix, sep, rest = self.model.partition("/")
        if sep and prefix in PROVIDERS:
            return rest
        return self.model

    @property
    def api_host(self) -> str:
        """Base URL of the selected provider, without a trailing slash."""
        provider = self.provider
        if provider == OLLAMA:
            host = self.ollama_host
        elif provider == LM_STUDIO:
            host = self.lm_studio_host
        else:
            host = None

        host = host or PROVIDERS[provider]["url"]
        # OLLAMA_HOST is commonly set as a bare `host:port`.
        if "://" not in host:
            host = f"http://{host}"
        return host.rstrip("/")

    def redacted(self) -> "ModelOptions":
        """Copy safe to print in verbose output."""
        if not self.openai_key:
            return self
        return dataclasses.replace(self, openai_key="***")


def normalize_provider(name: str) -> str:
    """Map user spellings of a provider onto its canonical identifier.

    Raises:
        ValueError: If the name does not match a known provider.
    """
    cleaned = name.strip().lower().replace("_", "-")
    if cleaned in ("lmstudio", "lm-studio"):
        return LM_STUDIO
    if cleaned in PROVIDERS:
        return cleaned
    raise ValueError(f"Unknown model host: {name}")


# =========================================================
# OPTION FOLDING
# =========================================================
# Each layer is a plain mapping of ModelOptions field names to values. `None`
# means "not set by this layer" and never overwrites an earlier value. The
# nested `context` mapping is folded field by field the same way.

_CONTEXT_FIELDS = {f.name for f in dataclasses.fields(ContextOptions)}
_MODEL_FIELDS = {f.name for f in dataclasses.fields(ModelOptions)}


def _coerce(name: str, value: Any) -> Any:
    if name == "stop":
        if isinstance(value, str):
            return (value,)
        return tuple(value)
    if name == "format" and not isinstance(value, OutputFormat):
        return OutputFormat(value)
    if name == "keep" and not isinstance(value, OverflowKeep):
        return OverflowKeep(value)
    if name == "model_host":
        return normalize_provider(value)
    return value


def fold_context_options(base: ContextOptions, layer: Mapping[str, Any]) -> ContextOptions:
    updates = {
        name: _coerce(name, value)
        for name, value in layer.items()
        if name in _CONTEXT_FIELDS and value is not None
    }
    if not updates:
        return base
    return dataclasses.replace(base, **updates)


def fold_model_options(base: ModelOptions, layer: Mapping[str, Any]) -> ModelOptions:
    """Return `base` with every field that `layer` sets overwritten.

    Unknown keys are ignored so that config files and template model blocks can
    carry keys meant for other tools.
    """
    updates = {}
    for name, value in layer.items():
        if name == "context" or name not in _MODEL_FIELDS or value is None:
            continue
        updates[name] = _coerce(name, value)

    context_layer = layer.get("context")
    if isinstance(context_layer, ContextOptions):
        context_layer = dataclasses.asdict(context_layer)
    if context_layer:
        updates["context"] = fold_context_options(base.context, context_layer)

    if not updates:
        return base
    return dataclasses.replace(base, **updates)


def resolve_model_options(*layers: Mapping[str, Any]) -> ModelOptions:
    """Fold layers onto backend defaults, lowest precedence first."""
    options = ModelOptions()
    for layer in layers:
        options = fold_model_options(options, layer)
    return options


# =========================================================
# ENVIRONMENT
# =========================================================

def load_key(env_names: tuple[str, ...] = ("OPENAI_API_KEY", "OPENAI_KEY")) -> Optional[str]:
    """Return the first non-empty API key found in the environment."""
    for name in env_names:
        value = os.getenv(name)
        if value and value.strip():
            return value.strip()
    return None


def environment_defaults() -> dict[str, Any]:
    """Model-option layer supplied by environment variables.

    Relevant environment variables:
        - `OLLAMA_HOST`
        - `LM_STUDIO_HOST`
        - `OPENAI_API_KEY` / `OPENAI_KEY`
        - `PROMPTBOX_MODEL_HOST`
    """
    return {
        "ollama_host": os.getenv("OLLAMA_HOST") or None,
        "lm_studio_host": os.getenv("LM_STUDIO_HOST") or None,
        "openai_key": load_key(),
        "model_host": os.getenv("PROMPTBOX_MODEL_HOST") or None,
    }
