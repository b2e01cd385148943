"""
Argument binding for `promptbox run`.

Architectural role:
- Builds one argparse surface from the fixed global run flags plus the options a
  template declares, so both are parsed from a single token stream.
- Coerces raw values to typed, JSON-shaped evaluation-context values.
- Reads File and Image option values from disk at binding time.

Binding lifecycle:
1. Derive one argparse argument per option descriptor (arity from `array` and
   type, value parser from `option_type`).
2. Parse the token stream; positionals and flags may be intermixed.
3. Check requiredness for every descriptor before touching the filesystem.
4. Walk descriptors in declaration order, filling the evaluation context.
   File values become `{filename, path, contents}` objects; Image values are
   loaded into `ImageData` and returned separately.

Requiredness rule:
- A descriptor is mandatory only when it is not Bool, has no default, and is not
  marked optional.

Error handling strategy:
- Malformed tokens, unknown flags, repeated scalar flags, and coercion failures
  raise `ArgumentParseFailure` naming the option.
- Missing mandatory values raise `MissingRequiredOption`.
- Unreadable files raise `IoFailure` from the attachment loader.

Determinism:
- Binding the same tokens against the same files yields identical contexts.
"""

from __future__ import annotations

import argparse
import math
import os
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from promptbox.api.multimodal.file_input_manager import (
    ImageData,
    create_file_object,
    read_image,
)
from promptbox.core.errors import ArgumentParseFailure, MissingRequiredOption
from promptbox.llm.provider_config import OutputFormat, OverflowKeep
from promptbox.prompting.templates import INT64_MAX, INT64_MIN, OptionType, PromptOption


_TEMPLATE_DEST_PREFIX = "template_option:"
_ARGUMENT_NAME = re.compile(r"argument (-{1,2}[\w-]+)")
_UNRECOGNIZED = re.compile(r"unrecognized arguments: (\S+)")


# ============================================================
# GLOBAL RUN OPTIONS
# ============================================================

@dataclass
class GlobalRunArgs:
    """Template-independent flags accepted by `promptbox run`."""

    template: str = ""
    lm_studio_host: Optional[str] = None
    ollama_host: Optional[str] = None
    openai_key: Optional[str] = None
    model: Optional[str] = None
    model_host: Optional[str] = None
    temperature: Optional[float] = None
    prepend: Optional[str] = None
    append: Optional[str] = None
    print_prompt: bool = False
    dry_run: bool = False
    verbose: bool = False
    format: Optional[OutputFormat] = None
    overflow_keep: Optional[OverflowKeep] = None
    context_limit: Optional[int] = None
    reserve_output_context: Optional[int] = None
    extra_prompt: List[str] = field(default_factory=list)

    def model_layer(self) -> Dict[str, Any]:
        """Model-option overrides given on the command line."""
        return {
            "model": self.model,
            "model_host": self.model_host,
            "ollama_host": self.ollama_host,
            "lm_studio_host": self.lm_studio_host,
            "openai_key": self.openai_key,
            "temperature": self.temperature,
            "format": self.format,
            "context": {
                "limit": self.context_limit,
                "keep": self.overflow_keep,
                "reserve_output": self.reserve_output_context,
            },
        }


def _positive_int(value: str) -> int:
    try:
        parsed = int(value, 10)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {value!r}")
    if parsed <= 0:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {value!r}")
    return parsed


def _non_negative_int(value: str) -> int:
    try:
        parsed = int(value, 10)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected a non-negative integer, got {value!r}")
    if parsed < 0:
        raise argparse.ArgumentTypeError(f"expected a non-negative integer, got {value!r}")
    return parsed


def add_global_run_arguments(parser: argparse.ArgumentParser) -> None:
    """Register the template-independent `run` flags on `parser`."""
    parser.add_argument("template", help="The template to run")
    parser.add_argument("--lm-studio-host", help="LM Studio host, if different from the default")
    parser.add_argument("--ollama-host", help="Ollama host, if different from the default")
    parser.add_argument("--openai-key", help="OpenAI API key")
    parser.add_argument("-m", "--model", help="Override the model used by the template")
    parser.add_argument("--model-host", help="Send the request to this model host")
    parser.add_argument(
        "-t", "--temperature", type=float, help="Override the temperature passed to the model"
    )
    parser.add_argument("--pre", dest="prepend", help="Prepend this text to the template")
    parser.add_argument("--post", dest="append", help="Append this text to the template")
    parser.add_argument("--print-prompt", action="store_true", help="Print the generated prompt")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the generated prompt and exit without submitting it to the model",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Print the prompt and the model parameters"
    )
    parser.add_argument(
        "--format",
        type=OutputFormat,
        choices=list(OutputFormat),
        help="Ask the model for JSON output",
    )
    parser.add_argument(
        "--overflow-keep",
        type=OverflowKeep,
        choices=list(OverflowKeep),
        help="Which side of the free-form content to keep when the prompt overflows "
        "(start keeps the trailing text, end keeps the leading text; default end)",
    )
    parser.add_argument(
        "--context-limit", type=_positive_int, help="Set a lower context size limit for the model"
    )
    parser.add_argument(
        "--reserve-output-context",
        type=_non_negative_int,
        help="Leave room for this many generated tokens (default 256)",
    )
    parser.add_argument(
        "extra_prompt", nargs="*", default=[], help="Extra strings to add to the end of the prompt"
    )


# ============================================================
# VALUE PARSERS
# ============================================================

def parse_string(value: str) -> str:
    if value == "":
        raise argparse.ArgumentTypeError("value must not be empty")
    return value


def parse_number(value: str) -> float:
    try:
        parsed = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid number: {value!r}")
    if not math.isfinite(parsed):
        raise argparse.ArgumentTypeError(f"number must be finite: {value!r}")
    return parsed


def parse_integer(value: str) -> int:
    try:
        parsed = int(value, 10)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid integer: {value!r}")
    if not INT64_MIN <= parsed <= INT64_MAX:
        raise argparse.ArgumentTypeError(f"integer out of range: {value!r}")
    return parsed


_TRUE_TOKENS = {"true", "yes", "1", "on"}
_FALSE_TOKENS = {"false", "no", "0", "off"}


def parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_TOKENS:
        return True
    if lowered in _FALSE_TOKENS:
        return False
    raise argparse.ArgumentTypeError(f"invalid boolean: {value!r}")


VALUE_PARSERS: Dict[OptionType, Callable[[str], Any]] = {
    OptionType.STRING: parse_string,
    OptionType.NUMBER: parse_number,
    OptionType.INTEGER: parse_integer,
    OptionType.BOOL: parse_bool,
    OptionType.FILE: parse_string,
    OptionType.IMAGE: parse_string,
}


# ============================================================
# PARSER
# ============================================================

class _ArgumentParser(argparse.ArgumentParser):
    """argparse parser that raises instead of exiting on bad input."""

    def error(self, message: str):
        match = _ARGUMENT_NAME.search(message) or _UNRECOGNIZED.search(message)
        option = None
        if match:
            option = match.group(1).lstrip("-").split("=", 1)[0] or None
        raise ArgumentParseFailure(message, option=option)


class _StoreOnce(argparse.Action):
    """Store a scalar value, rejecting a second occurrence of the flag."""

    def __call__(self, parser, namespace, values, option_string=None):
        if getattr(namespace, self.dest, None) is not None:
            parser.error(f"argument {option_string}: may only be given once")
        setattr(namespace, self.dest, values)


def _help_text(option: PromptOption) -> str:
    # argparse %-formats help strings.
    text = (option.description or "").replace("%", "%%")
    if option.required:
        text = f"{text} (required)".strip()
    return text


def build_run_parser(options: Dict[str, PromptOption]) -> argparse.ArgumentParser:
    """Create the merged global + template option parser."""
    parser = _ArgumentParser(prog="promptbox run", allow_abbrev=False)
    add_global_run_arguments(parser)

    group = parser.add_argument_group("template options")
    for name, option in options.items():
        dest = f"{_TEMPLATE_DEST_PREFIX}{name}"
        kwargs: Dict[str, Any] = {"dest": dest, "help": _help_text(option)}

        if option.array:
            kwargs.update(action="append", type=VALUE_PARSERS[option.option_type], default=None)
        elif option.option_type is OptionType.BOOL:
            kwargs.update(action="store_true", default=False)
        else:
            kwargs.update(action=_StoreOnce, type=VALUE_PARSERS[option.option_type], default=None)

        if option.option_type in (OptionType.FILE, OptionType.IMAGE):
            kwargs["metavar"] = "PATH"

        try:
            group.add_argument(f"--{name}", **kwargs)
        except argparse.ArgumentError as exc:
            raise ArgumentParseFailure(
                "conflicts with a built-in flag", option=name
            ) from exc

    return parser


# ============================================================
# BINDING
# ============================================================

def _default_value(option: PromptOption) -> Any:
    # Declared defaults are already typed (and listed, for arrays) by PromptOption.
    if option.default is not None:
        return list(option.default) if option.array else option.default
    return [] if option.array else None


def _image_summary(image: ImageData, path: str) -> Dict[str, Any]:
    return {
        "filename": os.path.basename(os.path.normpath(path)),
        "path": path,
        "format": image.format,
        "width": image.width,
        "height": image.height,
    }


def bind_arguments(
    tokens: Sequence[str],
    base_dir: str,
    options: Dict[str, PromptOption],
) -> Tuple[GlobalRunArgs, Dict[str, Any], List[ImageData]]:
    """
    Parse `run` tokens against a template's declared options.

    Args:
        tokens: Command-line tokens following `run`, starting with the template
            name.
        base_dir: Directory File and Image paths are resolved against.
        options: The template's option descriptors, in declaration order.

    Returns:
        `(global_args, context, images)`. `context` holds one entry per declared
        option. Image options map to metadata summaries; the image bytes are in
        `images`, in option declaration order then caller order.

    Raises:
        ArgumentParseFailure, MissingRequiredOption, IoFailure.
    """
    parser = build_run_parser(options)
    namespace = vars(parser.parse_intermixed_args(list(tokens)))

    raw_values: Dict[str, Any] = {}
    for name, option in options.items():
        value = namespace.get(f"{_TEMPLATE_DEST_PREFIX}{name}")
        if value is None:
            if option.required:
                raise MissingRequiredOption(name)
            value = _default_value(option)
        raw_values[name] = value

    context: Dict[str, Any] = {}
    images: List[ImageData] = []

    for name, option in options.items():
        value = raw_values[name]

        if option.option_type is OptionType.FILE:
            if option.array:
                context[name] = [create_file_object(base_dir, path) for path in value]
            else:
                context[name] = create_file_object(base_dir, value) if value is not None else None

        elif option.option_type is OptionType.IMAGE:
            paths = value if option.array else ([] if value is None else [value])
            summaries = []
            for path in paths:
                image = read_image(base_dir, path)
                images.append(image)
                summaries.append(_image_summary(image, path))
            context[name] = summaries if option.array else (summaries[0] if summaries else None)

        elif option.option_type is OptionType.BOOL and not option.array:
            context[name] = bool(value)

        else:
            context[name] = value

    global_args = GlobalRunArgs(
        **{
            key: namespace[key]
            for key in GlobalRunArgs.__dataclass_fields__
            if key in namespace
        }
    )
    global_args.extra_prompt = list(global_args.extra_prompt or [])

    return global_args, context, images
