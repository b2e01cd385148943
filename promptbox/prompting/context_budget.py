"""Context-window budget enforcement for rendered prompts.

Architectural role:
    Guarantees the prompt sent to a backend fits in
    `context_limit - reserve_output` tokens, measured with the backend's
    tokenizer. Called by `promptbox.core.engine` after the first render and
    before dispatch.

Truncation strategy:
    Only free-form input is shortened; template text, `--pre` and `--post`
    text are never touched. Free-form segments are visited in this order:

    1. the `extra` context value (positional extras and piped stdin),
    2. File option `contents`, last declared option first.

    Each segment is cut in whole lines (single-line segments in whole words).
    `OverflowKeep.END` keeps the leading units, `OverflowKeep.START` keeps the
    trailing ones. The longest surviving prefix/suffix is found by binary
    search, which is valid because token counts grow monotonically with text.
    A segment is emptied entirely before the next one is touched.

Failure behavior:
    `ContextLimitExceeded` is raised when the budget is not positive or when the
    prompt still overflows with every free-form segment emptied.

Determinism:
    Deterministic for a fixed template, context, tokenizer, and limit. The only
    I/O is the optional context-size lookup when no explicit limit is set.
"""

from __future__ import annotations

import copy
import logging
import re
from typing import Any, Callable, Mapping, Optional, Sequence, Union

from promptbox.core.errors import ContextLimitExceeded
from promptbox.llm.provider_config import ModelOptions, OverflowKeep
from promptbox.llm.service import model_context_size
from promptbox.prompting.prompt_builder import EXTRA_KEY, PromptAssembly
from promptbox.prompting.token_estimator import Tokenizer, tokenizer_for


logger = logging.getLogger(__name__)

# Path from the context root to one free-form string, e.g. ("extra",),
# ("doc", "contents") or ("docs", 2, "contents").
SegmentPath = tuple[Union[str, int], ...]

_WORD_UNITS = re.compile(r"\S+\s*|\s+")


def split_units(text: str) -> list[str]:
    """Split text into truncation units that concatenate back to `text`."""
    units = text.splitlines(keepends=True)
    if len(units) == 1:
        units = _WORD_UNITS.findall(text)
    return units


def _get(context: Mapping[str, Any], path: SegmentPath) -> Any:
    value: Any = context
    for key in path:
        value = value[key]
    return value


def _set(context: dict[str, Any], path: SegmentPath, value: str) -> None:
    parent: Any = context
    for key in path[:-1]:
        parent = parent[key]
    parent[path[-1]] = value


def free_form_segments(
    context: Mapping[str, Any],
    file_options: Sequence[str],
    keep: OverflowKeep,
) -> list[SegmentPath]:
    """List the free-form context strings in the order they are truncated.

    Args:
        context: Evaluation context.
        file_options: Names of File-typed options in declaration order.
        keep: Overflow policy; decides which array element is cut first.
    """
    segments: list[SegmentPath] = []
    if isinstance(context.get(EXTRA_KEY), str):
        segments.append((EXTRA_KEY,))

    for name in reversed(file_options):
        value = context.get(name)
        if isinstance(value, dict):
            segments.append((name, "contents"))
        elif isinstance(value, list):
            indexes = range(len(value))
            # Cut from the side that is being dropped.
            if keep is OverflowKeep.END:
                indexes = reversed(indexes)
            segments.extend((name, i, "contents") for i in indexes)

    return segments


def _kept(units: list[str], count: int, keep: OverflowKeep) -> str:
    if count <= 0:
        return ""
    if keep is OverflowKeep.END:
        return "".join(units[:count])
    return "".join(units[-count:])


def enforce_context_limit(
    options: ModelOptions,
    assembly: PromptAssembly,
    context: Mapping[str, Any],
    prompt: str,
    *,
    file_options: Sequence[str] = (),
    tokenizer: Optional[Tokenizer] = None,
    context_size: Optional[Callable[[ModelOptions], int]] = None,
) -> str:
    """Return `prompt`, or a re-rendered shorter prompt, that fits the budget.

    Args:
        options: Resolved model options; `options.context` holds the limit,
            reserve, and overflow policy.
        assembly: Compiled template used to re-render after truncation.
        context: Evaluation context that produced `prompt`. Not modified.
        prompt: The prompt rendered from `context`.
        file_options: Names of File-typed options, in declaration order.
        tokenizer: Token counter. Defaults to the backend's tokenizer.
        context_size: Native context lookup used when no explicit limit is set.

    Returns:
        The unchanged prompt when it fits, otherwise the truncated re-render.

    Raises:
        ContextLimitExceeded: The prompt cannot be made to fit.
    """
    count_tokens = tokenizer or tokenizer_for(options.provider, options.full_model_name)

    limit = options.context.limit
    if limit is None:
        limit = (context_size or model_context_size)(options)
    available = limit - options.context.reserve_output

    original_tokens = count_tokens(prompt)
    if available <= 0:
        raise ContextLimitExceeded(original_tokens, max(available, 0))
    if original_tokens <= available:
        return prompt

    keep = options.context.keep
    working = copy.deepcopy(dict(context))

    def fits() -> tuple[bool, str]:
        candidate = assembly.render(working)
        return count_tokens(candidate) <= available, candidate

    for path in free_form_segments(working, file_options, keep):
        text = _get(working, path)
        if not text:
            continue

        units = split_units(text)

        _set(working, path, "")
        ok, candidate = fits()
        if not ok:
            # Even without this segment the prompt overflows; move on.
            continue

        # Invariant: keeping `lo` units fits, keeping `hi` units does not.
        lo, hi = 0, len(units)
        best = candidate
        while hi - lo > 1:
            mid = (lo + hi) // 2
            _set(working, path, _kept(units, mid, keep))
            ok, candidate = fits()
            if ok:
                lo, best = mid, candidate
            else:
                hi = mid

        _set(working, path, _kept(units, lo, keep))
        logger.warning(
            "Prompt exceeded context budget and was truncated: tokens=%d -> %d (budget=%d, keep=%s)",
            original_tokens,
            count_tokens(best),
            available,
            keep.value,
        )
        return best

    final_tokens = count_tokens(assembly.render(working))
    raise ContextLimitExceeded(final_tokens, available)
