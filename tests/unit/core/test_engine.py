"""End-to-end tests for the run pipeline with the network stubbed out."""

from __future__ import annotations

import io
from pathlib import Path

import pytest

from promptbox.core.engine import generate_template, join_extra, run_template
from promptbox.core.errors import (
    ArgumentParseFailure,
    ContextLimitExceeded,
    MissingRequiredOption,
)
from promptbox.llm.provider_config import OverflowKeep
from tests.conftest import FakeResponse, ollama_lines


SUMMARIZE = """
description = "Summarize a file"
template = "Summarize {{ doc.contents }}"
system = "You summarize {{ doc.filename }}."

[model]
model = "llama3"
temperature = 0.2

[model.context]
limit = 4096

[options.doc]
type = "file"
"""


@pytest.fixture
def project(tmp_path: Path, write_template) -> Path:
    write_template("summarize", SUMMARIZE)
    (tmp_path / "notes.txt").write_text("hello world", encoding="utf-8")
    return tmp_path


@pytest.mark.unit
def test_join_extra() -> None:
    assert join_extra(["a", "b"], "piped") == "a\n\nb\n\npiped"
    assert join_extra([], "") == ""
    assert join_extra(["only"], None) == "only"


@pytest.mark.unit
def test_generate_renders_prompt_and_system(project: Path) -> None:
    generated = generate_template(project, "summarize", ["summarize", "--doc", "notes.txt"])

    assert generated.prompt == "Summarize hello world"
    assert generated.system == "You summarize notes.txt."
    assert generated.options.model == "llama3"
    assert generated.options.temperature == 0.2
    assert generated.options.context.limit == 4096


@pytest.mark.unit
def test_extras_stdin_pre_and_post(project: Path) -> None:
    generated = generate_template(
        project,
        "summarize",
        ["summarize", "--doc", "notes.txt", "also this", "--pre", "PRE", "--post", "POST"],
        stdin_text="piped",
    )

    assert generated.prompt == "PRE\n\nSummarize hello world\n\nalso this\n\npiped\n\nPOST"


@pytest.mark.unit
def test_cli_flags_override_template_model_block(project: Path) -> None:
    generated = generate_template(
        project,
        "summarize",
        [
            "summarize",
            "--doc",
            "notes.txt",
            "-t",
            "0.9",
            "-m",
            "mistral",
            "--overflow-keep",
            "start",
        ],
    )

    assert generated.options.temperature == 0.9
    assert generated.options.model == "mistral"
    assert generated.options.context.keep is OverflowKeep.START
    assert generated.options.context.limit == 4096


@pytest.mark.unit
def test_invalid_model_host_flag(project: Path) -> None:
    with pytest.raises(ArgumentParseFailure):
        generate_template(
            project, "summarize", ["summarize", "--doc", "notes.txt", "--model-host", "nowhere"]
        )


@pytest.mark.unit
def test_missing_required_option(project: Path) -> None:
    with pytest.raises(MissingRequiredOption):
        generate_template(project, "summarize", ["summarize"])


@pytest.mark.unit
def test_long_input_is_truncated_to_the_budget(project: Path) -> None:
    (project / "long.txt").write_text(
        "\n".join(f"line {i}" for i in range(500)) + "\n", encoding="utf-8"
    )

    generated = generate_template(
        project,
        "summarize",
        [
            "summarize",
            "--doc",
            "long.txt",
            "--context-limit",
            "100",
            "--reserve-output-context",
            "20",
        ],
    )

    assert generated.prompt.startswith("Summarize line 0\nline 1\n")
    assert "line 499" not in generated.prompt


@pytest.mark.unit
def test_prompt_that_cannot_fit_raises(project: Path) -> None:
    with pytest.raises(ContextLimitExceeded):
        generate_template(
            project,
            "summarize",
            ["summarize", "--doc", "notes.txt", "--context-limit", "10", "--reserve-output-context", "10"],
        )


@pytest.mark.unit
def test_dry_run_prints_prompt_without_sending(project: Path, recorded_posts) -> None:
    output, errors = io.StringIO(), io.StringIO()

    run_template(
        project,
        "summarize",
        ["summarize", "--doc", "notes.txt", "--dry-run"],
        output=output,
        errors=errors,
    )

    assert output.getvalue() == ""
    assert "== System:\nYou summarize notes.txt." in errors.getvalue()
    assert "== Prompt:\nSummarize hello world\n\n== Result:" in errors.getvalue()
    assert recorded_posts.calls == []


@pytest.mark.unit
def test_run_streams_response_to_output(project: Path, recorded_posts) -> None:
    recorded_posts.queue.append(FakeResponse(ollama_lines("Short", " summary.")))
    output, errors = io.StringIO(), io.StringIO()

    run_template(
        project,
        "summarize",
        ["summarize", "--doc", "notes.txt"],
        output=output,
        errors=errors,
    )

    assert output.getvalue() == "Short summary.\n"
    assert errors.getvalue() == ""
    payload = recorded_posts.calls[0]["json"]
    assert payload["prompt"] == "Summarize hello world"
    assert payload["system"] == "You summarize notes.txt."
    assert payload["options"]["num_ctx"] == 4096


@pytest.mark.unit
def test_verbose_prints_redacted_options(project: Path, recorded_posts, monkeypatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "sk-secret")
    recorded_posts.queue.append(FakeResponse(ollama_lines("ok")))
    output, errors = io.StringIO(), io.StringIO()

    run_template(
        project,
        "summarize",
        ["summarize", "--doc", "notes.txt", "-v"],
        output=output,
        errors=errors,
    )

    assert "provider=ollama" in errors.getvalue()
    assert "sk-secret" not in errors.getvalue()
    assert output.getvalue() == "ok\n"
