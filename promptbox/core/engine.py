"""Core run pipeline: template lookup, binding, rendering, budgeting, dispatch.

Architectural role:
    Provides the execution pipeline the CLI adapter uses to turn one
    `promptbox run <template> ...` invocation into streamed model output.

Control-flow model:
    1. Discover configuration for the base directory and locate the template.
    2. Bind command-line tokens against the template's option schema.
    3. Fold model options: environment < config files < template < CLI.
    4. Assemble the prompt around the template body (`--pre`, extras, `--post`).
    5. Render the prompt and system text from the evaluation context.
    6. Enforce the context budget, truncating free-form content if needed.
    7. Optionally print diagnostics, then stream the response to the output.

Extra content:
    Positional extras and non-empty piped stdin are joined with blank lines and
    bound as the `extra` context value. A template that references `extra`
    places it itself; otherwise it is appended after the rendered body.

Error handling strategy:
    Failures propagate as `PromptboxError` subclasses; nothing here catches and
    degrades. The CLI adapter turns them into exit statuses.

Side effects:
    - Reads configuration, template, File and Image inputs from disk.
    - Writes diagnostics to the error stream and model output to the output
      stream.
    - Issues HTTP requests to the selected backend (context-size lookup and
      generation).

Determinism:
    Everything up to dispatch is deterministic for fixed inputs, environment,
    and filesystem. Model output is not.
"""

import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional, Sequence, TextIO

from promptbox.api.args import GlobalRunArgs, bind_arguments
from promptbox.api.multimodal.file_input_manager import ImageData
from promptbox.core.config import Config
from promptbox.core.errors import ArgumentParseFailure, ConfigParseFailure
from promptbox.llm.provider_config import (
    ModelOptions,
    environment_defaults,
    fold_model_options,
    resolve_model_options,
)
from promptbox.llm.service import stream_model_response
from promptbox.prompting.context_budget import enforce_context_limit
from promptbox.prompting.prompt_builder import (
    EXTRA_KEY,
    SECTION_SEPARATOR,
    PromptAssembly,
    render_template,
)
from promptbox.prompting.templates import OptionType


logger = logging.getLogger(__name__)


@dataclass
class GeneratedPrompt:
    """Everything needed to dispatch one run, before any network generation."""

    args: GlobalRunArgs
    options: ModelOptions
    prompt: str
    system: str = ""
    images: list[ImageData] = field(default_factory=list)


def join_extra(extra_prompt: Sequence[str], stdin_text: Optional[str]) -> str:
    """Join positional extras and piped stdin into one free-form block."""
    parts = list(extra_prompt)
    if stdin_text:
        parts.append(stdin_text)
    return SECTION_SEPARATOR.join(parts)


# =========================================================
# PROMPT GENERATION
# =========================================================

def generate_template(
    base_dir: Path,
    template_name: str,
    tokens: Sequence[str],
    stdin_text: Optional[str] = None,
    *,
    context_size: Optional[Callable[[ModelOptions], int]] = None,
) -> GeneratedPrompt:
    """Produce the final prompt, system text, and model options for a run.

    Args:
        base_dir: Directory configuration discovery and relative paths start from.
        template_name: Template to look up.
        tokens: Command-line tokens following `run`, including the template name.
        stdin_text: Text piped on stdin, if any.
        context_size: Override for the native context-size lookup.

    Returns:
        A `GeneratedPrompt`; no generation request has been made.

    Raises:
        PromptboxError: Any configuration, binding, render, or budget failure.
    """
    base_dir = Path(base_dir)
    try:
        defaults = resolve_model_options(environment_defaults())
    except ValueError as exc:
        raise ConfigParseFailure("environment", str(exc)) from exc
    config = Config.from_directory(base_dir, defaults=defaults)
    parsed = config.find_template(template_name)
    template_input = parsed.input

    args, context, images = bind_arguments(tokens, str(base_dir), template_input.options)

    options = fold_model_options(config.model, template_input.model.as_layer())
    try:
        options = fold_model_options(options, args.model_layer())
    except ValueError as exc:
        raise ArgumentParseFailure(str(exc), option="model-host") from exc

    context[EXTRA_KEY] = join_extra(args.extra_prompt, stdin_text)

    assembly = PromptAssembly.build(
        str(parsed.template_path),
        parsed.template,
        prepend=args.prepend,
        append=args.append,
    )
    prompt = assembly.render(context)

    system = ""
    if parsed.system is not None:
        system_path, system_source = parsed.system
        system = render_template(str(system_path), system_source, context)

    file_options = [
        name
        for name, option in template_input.options.items()
        if option.option_type is OptionType.FILE
    ]
    prompt = enforce_context_limit(
        options,
        assembly,
        context,
        prompt,
        file_options=file_options,
        context_size=context_size,
    )

    return GeneratedPrompt(
        args=args,
        options=options,
        prompt=prompt,
        system=system,
        images=images,
    )


# =========================================================
# RUN
# =========================================================

def run_template(
    base_dir: Path,
    template_name: str,
    tokens: Sequence[str],
    stdin_text: Optional[str] = None,
    *,
    output: Optional[TextIO] = None,
    errors: Optional[TextIO] = None,
) -> None:
    """Generate the prompt for a template and stream the model's answer.

    With `--dry-run` the prompt is printed to `errors` and nothing is sent.
    Fragments are written to `output` and flushed as they arrive, followed by a
    single newline once the stream ends.
    """
    output = output or sys.stdout
    errors = errors or sys.stderr

    generated = generate_template(base_dir, template_name, tokens, stdin_text)
    args = generated.args

    if args.verbose:
        print(_describe_options(generated.options), file=errors)

    if args.print_prompt or args.verbose or args.dry_run:
        if generated.system:
            print(f"== System:\n{generated.system}\n", file=errors)
        print(f"== Prompt:\n{generated.prompt}\n\n== Result:", file=errors)

    if args.dry_run:
        logger.info("Dry run; prompt for %s was not sent", template_name)
        return

    for fragment in stream_model_response(
        generated.options,
        generated.prompt,
        generated.system or None,
        generated.images,
    ):
        output.write(fragment)
        output.flush()

    output.write("\n")
    output.flush()


def _describe_options(options: ModelOptions) -> str:
    safe = options.redacted()
    fields: dict[str, Any] = {
        "provider": safe.provider,
        "host": safe.api_host,
        "model": safe.full_model_name,
        "temperature": safe.temperature,
        "format": safe.format.value if safe.format else None,
        "context_limit": safe.context.limit,
        "reserve_output": safe.context.reserve_output,
        "overflow_keep": safe.context.keep.value,
    }
    if safe.openai_key:
        fields["openai_key"] = safe.openai_key
    return "Model options: " + ", ".join(f"{k}={v}" for k, v in fields.items())
