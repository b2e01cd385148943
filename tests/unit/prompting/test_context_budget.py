"""Unit tests for context-window budget enforcement.

A whitespace word counter stands in for the backend tokenizer so expected
token counts can be computed by hand.
"""

from __future__ import annotations

import copy

import pytest

from promptbox.core.errors import ContextLimitExceeded
from promptbox.llm.provider_config import ContextOptions, ModelOptions, OverflowKeep
from promptbox.prompting.context_budget import (
    enforce_context_limit,
    free_form_segments,
    split_units,
)
from promptbox.prompting.prompt_builder import PromptAssembly


def count_words(text: str) -> int:
    return len(text.split())


def _words(prefix: str, n: int) -> str:
    return " ".join(f"{prefix}{i}" for i in range(1, n + 1))


def _options(limit=100, reserve=20, keep=OverflowKeep.END) -> ModelOptions:
    return ModelOptions(context=ContextOptions(limit=limit, reserve_output=reserve, keep=keep))


def _no_lookup(options: ModelOptions) -> int:
    raise AssertionError("context size lookup should not run with an explicit limit")


@pytest.mark.unit
def test_prompt_that_fits_is_returned_unchanged() -> None:
    assembly = PromptAssembly.build("t", "Summarize: {{ doc.contents }}")
    context = {"doc": {"contents": _words("w", 10)}, "extra": ""}
    prompt = assembly.render(context)

    result = enforce_context_limit(
        _options(),
        assembly,
        context,
        prompt,
        file_options=["doc"],
        tokenizer=count_words,
        context_size=_no_lookup,
    )

    assert result is prompt


@pytest.mark.unit
def test_overflowing_file_keeps_leading_words_by_default() -> None:
    assembly = PromptAssembly.build("t", "Summarize: {{ doc.contents }}")
    context = {"doc": {"contents": _words("w", 150)}, "extra": ""}
    prompt = assembly.render(context)
    assert count_words(prompt) == 151

    result = enforce_context_limit(
        _options(), assembly, context, prompt, file_options=["doc"], tokenizer=count_words
    )

    words = result.split()
    assert count_words(result) == 80
    assert words[:3] == ["Summarize:", "w1", "w2"]
    assert words[-1] == "w79"


@pytest.mark.unit
def test_overflow_keep_start_keeps_trailing_words() -> None:
    assembly = PromptAssembly.build("t", "Summarize: {{ doc.contents }}")
    context = {"doc": {"contents": _words("w", 150)}, "extra": ""}
    prompt = assembly.render(context)

    result = enforce_context_limit(
        _options(keep=OverflowKeep.START),
        assembly,
        context,
        prompt,
        file_options=["doc"],
        tokenizer=count_words,
    )

    words = result.split()
    assert count_words(result) == 80
    assert words[:2] == ["Summarize:", "w72"]
    assert words[-1] == "w150"


@pytest.mark.unit
def test_multiline_content_is_cut_in_whole_lines() -> None:
    assembly = PromptAssembly.build("t", "Read:\n{{ doc.contents }}")
    lines = [f"line{i} alpha beta" for i in range(1, 41)]
    context = {"doc": {"contents": "\n".join(lines) + "\n"}, "extra": ""}
    prompt = assembly.render(context)

    result = enforce_context_limit(
        _options(limit=50, reserve=0),
        assembly,
        context,
        prompt,
        file_options=["doc"],
        tokenizer=count_words,
    )

    kept = result.splitlines()[1:]
    assert kept == lines[: len(kept)]
    assert count_words(result) <= 50
    assert len(kept) == 16


@pytest.mark.unit
def test_extra_is_truncated_before_file_contents() -> None:
    assembly = PromptAssembly.build("t", "{{ doc.contents }}")
    context = {"doc": {"contents": _words("d", 50)}, "extra": _words("e", 50)}
    prompt = assembly.render(context)
    assert count_words(prompt) == 100

    result = enforce_context_limit(
        _options(limit=60, reserve=0),
        assembly,
        context,
        prompt,
        file_options=["doc"],
        tokenizer=count_words,
    )

    words = result.split()
    assert words[:50] == _words("d", 50).split()
    assert words[50:] == _words("e", 10).split()


@pytest.mark.unit
def test_context_is_not_mutated() -> None:
    assembly = PromptAssembly.build("t", "{{ doc.contents }}")
    context = {"doc": {"contents": _words("d", 200)}, "extra": ""}
    before = copy.deepcopy(context)

    enforce_context_limit(
        _options(),
        assembly,
        context,
        assembly.render(context),
        file_options=["doc"],
        tokenizer=count_words,
    )

    assert context == before


@pytest.mark.unit
def test_fixed_template_text_that_overflows_raises() -> None:
    assembly = PromptAssembly.build("t", _words("fixed", 100))
    context = {"extra": ""}

    with pytest.raises(ContextLimitExceeded) as excinfo:
        enforce_context_limit(
            _options(), assembly, context, assembly.render(context), tokenizer=count_words
        )

    assert excinfo.value.required == 100
    assert excinfo.value.available == 80


@pytest.mark.unit
def test_reserve_larger_than_limit_raises() -> None:
    assembly = PromptAssembly.build("t", "short")

    with pytest.raises(ContextLimitExceeded):
        enforce_context_limit(
            _options(limit=10, reserve=20),
            assembly,
            {"extra": ""},
            "short",
            tokenizer=count_words,
        )


@pytest.mark.unit
def test_context_size_lookup_is_used_without_explicit_limit() -> None:
    assembly = PromptAssembly.build("t", "{{ doc.contents }}")
    context = {"doc": {"contents": _words("d", 40)}, "extra": ""}
    seen = []

    def lookup(options: ModelOptions) -> int:
        seen.append(options.full_model_name)
        return 30

    result = enforce_context_limit(
        _options(limit=None, reserve=0),
        assembly,
        context,
        assembly.render(context),
        file_options=["doc"],
        tokenizer=count_words,
        context_size=lookup,
    )

    assert seen == ["llama3"]
    assert count_words(result) == 30


@pytest.mark.unit
def test_free_form_segment_order() -> None:
    context = {
        "extra": "x",
        "first": {"contents": "a"},
        "many": [{"contents": "b"}, {"contents": "c"}],
        "unset": None,
    }

    segments = free_form_segments(context, ["first", "many", "unset"], OverflowKeep.END)

    assert segments == [
        ("extra",),
        ("many", 1, "contents"),
        ("many", 0, "contents"),
        ("first", "contents"),
    ]


@pytest.mark.unit
def test_split_units_round_trips_text() -> None:
    text = "one two  three\n"
    assert "".join(split_units(text)) == text
    assert split_units("a b c") == ["a ", "b ", "c"]
    assert split_units("x\ny\n") == ["x\n", "y\n"]
