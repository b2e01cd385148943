"""Unit tests for provider routing and layered model options."""

from __future__ import annotations

import pytest

from promptbox.llm.provider_config import (
    LM_STUDIO,
    OLLAMA,
    OPENAI,
    ContextOptions,
    ModelOptions,
    OutputFormat,
    OverflowKeep,
    environment_defaults,
    fold_model_options,
    normalize_provider,
    resolve_model_options,
)


@pytest.mark.unit
@pytest.mark.parametrize(
    ("model", "model_host", "provider", "wire_name"),
    [
        ("llama3", None, OLLAMA, "llama3"),
        ("gpt-4o", None, OPENAI, "gpt-4o"),
        ("o1-mini", None, OPENAI, "o1-mini"),
        ("o4-mini", None, OPENAI, "o4-mini"),
        ("chatgpt-4o-latest", None, OPENAI, "chatgpt-4o-latest"),
        ("lm-studio/phi3", None, LM_STUDIO, "phi3"),
        ("openai/my-finetune", None, OPENAI, "my-finetune"),
        ("gpt-4o", "ollama", OLLAMA, "gpt-4o"),
        ("library/model", None, OLLAMA, "library/model"),
    ],
)
def test_provider_resolution(model, model_host, provider, wire_name) -> None:
    options = ModelOptions(model=model, model_host=model_host)

    assert options.provider == provider
    assert options.full_model_name == wire_name


@pytest.mark.unit
@pytest.mark.parametrize(
    ("host", "expected"),
    [
        (None, "http://localhost:11434"),
        ("gpu:11434", "http://gpu:11434"),
        ("https://ollama.internal/", "https://ollama.internal"),
    ],
)
def test_ollama_api_host(host, expected) -> None:
    assert ModelOptions(ollama_host=host).api_host == expected


@pytest.mark.unit
def test_normalize_provider_spellings() -> None:
    assert normalize_provider("LMStudio") == LM_STUDIO
    assert normalize_provider("lm_studio") == LM_STUDIO
    assert normalize_provider(" OpenAI ") == OPENAI
    with pytest.raises(ValueError):
        normalize_provider("bard")


@pytest.mark.unit
def test_later_layers_win_and_unset_fields_do_not_overwrite() -> None:
    config_layer = {"model": "mistral", "temperature": 0.1, "context": {"limit": 4096}}
    template_layer = {"temperature": 0.4, "context": {"keep": "start"}}
    cli_layer = {"model": None, "temperature": 0.9, "format": "json", "context": {"limit": None}}

    options = resolve_model_options(config_layer, template_layer, cli_layer)

    assert options.model == "mistral"
    assert options.temperature == 0.9
    assert options.format is OutputFormat.JSON
    assert options.context == ContextOptions(limit=4096, keep=OverflowKeep.START, reserve_output=256)


@pytest.mark.unit
def test_folding_is_pure() -> None:
    base = ModelOptions()

    folded = fold_model_options(base, {"model": "phi3", "stop": "END", "unknown": 1})

    assert base.model == "llama3"
    assert folded.model == "phi3"
    assert folded.stop == ("END",)
    assert fold_model_options(base, {}) is base


@pytest.mark.unit
def test_environment_layer(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OLLAMA_HOST", "box:11434")
    monkeypatch.setenv("OPENAI_KEY", "sk-env")

    options = resolve_model_options(environment_defaults(), {"openai_key": "sk-cli"})

    assert options.ollama_host == "box:11434"
    assert options.openai_key == "sk-cli"
    assert resolve_model_options(environment_defaults()).openai_key == "sk-env"


@pytest.mark.unit
def test_redacted_hides_the_key() -> None:
    options = ModelOptions(openai_key="sk-secret")

    assert options.redacted().openai_key == "***"
    assert options.openai_key == "sk-secret"
