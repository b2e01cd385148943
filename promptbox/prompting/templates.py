"""Prompt template schema and template-file loading.

Architectural role:
    Parses `<name>.pb.toml` template files into validated `PromptTemplate`
    objects and resolves their body/system text. Template lookup across
    configuration directories lives in `promptbox.core.config`.

Template file layout:
    description = "Summarize a file"
    template = "Summarize {{ file.contents }}"     # or template_path = "summarize.j2"
    system = "You are terse."                      # or system_path = "..."

    [model]
    model = "llama3"
    temperature = 0.2

    [options.file]
    type = "file"
    description = "The file to summarize"

Invariants:
    - A Bool option is never required; its absence binds `false`.
    - An option with a default is never required.
    - Option declaration order is preserved and defines evaluation-context order.
"""

from __future__ import annotations

import enum
import logging
import math
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    field_validator,
)

from promptbox.core.errors import EmptyTemplate, TemplateParseFailure
from promptbox.llm.provider_config import normalize_provider


logger = logging.getLogger(__name__)

TEMPLATE_SUFFIX = ".pb.toml"
RESERVED_OPTION = "extra"


class OptionType(str, enum.Enum):
    STRING = "string"
    NUMBER = "number"
    INTEGER = "integer"
    BOOL = "bool"
    FILE = "file"
    IMAGE = "image"


_OPTION_TYPE_ALIASES = {
    "str": "string",
    "text": "string",
    "float": "number",
    "int": "integer",
    "boolean": "bool",
    "path": "file",
}

INT64_MIN = -(2 ** 63)
INT64_MAX = 2 ** 63 - 1


def _coerce_default(option_type: OptionType, value: Any) -> Any:
    """Check a declared default against its option type.

    Defaults get the same Python types as values supplied on the command line:
    integers are `int`, numbers are `float`, and String, File and Image
    defaults are non-empty strings.
    """
    if option_type is OptionType.BOOL:
        if not isinstance(value, bool):
            raise ValueError(f"default must be a boolean, got {value!r}")
        return value

    if option_type is OptionType.INTEGER:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"default must be an integer, got {value!r}")
        if not INT64_MIN <= value <= INT64_MAX:
            raise ValueError(f"default integer out of range: {value!r}")
        return value

    if option_type is OptionType.NUMBER:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"default must be a number, got {value!r}")
        if not math.isfinite(value):
            raise ValueError(f"default number must be finite: {value!r}")
        return float(value)

    if not isinstance(value, str) or value == "":
        raise ValueError(f"default must be a non-empty string, got {value!r}")
    return value


class PromptOption(BaseModel):
    """One declared template option (an option descriptor)."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True, frozen=True)

    option_type: OptionType = Field(OptionType.STRING, alias="type")
    description: str = ""
    array: bool = False
    optional: bool = False
    default: Any = None

    @field_validator("option_type", mode="before")
    @classmethod
    def _normalize_type(cls, value: Any) -> Any:
        if isinstance(value, str):
            lowered = value.strip().lower()
            return _OPTION_TYPE_ALIASES.get(lowered, lowered)
        return value

    @field_validator("default")
    @classmethod
    def _check_default(cls, value: Any, info: ValidationInfo) -> Any:
        option_type = info.data.get("option_type")
        if value is None or option_type is None:
            return value

        if info.data.get("array"):
            values = value if isinstance(value, list) else [value]
            return [_coerce_default(option_type, item) for item in values]
        return _coerce_default(option_type, value)

    @property
    def required(self) -> bool:
        return (
            self.option_type is not OptionType.BOOL
            and self.default is None
            and not self.optional
        )


class ContextInput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    limit: Optional[int] = Field(None, gt=0)
    keep: Optional[str] = None
    reserve_output: Optional[int] = Field(None, ge=0)

    @field_validator("keep")
    @classmethod
    def _check_keep(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value not in ("start", "end"):
            raise ValueError("keep must be 'start' or 'end'")
        return value


class ModelInput(BaseModel):
    """Model defaults declared by a template or a configuration file."""

    model_config = ConfigDict(extra="forbid")

    model: Optional[str] = None
    model_host: Optional[str] = None
    ollama_host: Optional[str] = None
    lm_studio_host: Optional[str] = None
    openai_key: Optional[str] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None
    stop: Optional[list[str]] = None
    max_tokens: Optional[int] = None
    format: Optional[str] = None
    context: Optional[ContextInput] = None

    @field_validator("model_host")
    @classmethod
    def _check_model_host(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        return normalize_provider(value)

    @field_validator("format")
    @classmethod
    def _check_format(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value != "json":
            raise ValueError("format must be 'json'")
        return value

    def as_layer(self) -> dict[str, Any]:
        """Mapping suitable for `fold_model_options`."""
        return self.model_dump(exclude_none=True)


class PromptTemplate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    description: str = ""
    template: Optional[str] = None
    template_path: Optional[str] = None
    system: Optional[str] = None
    system_path: Optional[str] = None
    model: ModelInput = Field(default_factory=ModelInput)
    options: dict[str, PromptOption] = Field(default_factory=dict)

    @field_validator("options")
    @classmethod
    def _check_option_names(cls, value: dict[str, PromptOption]) -> dict[str, PromptOption]:
        # `extra` carries positional and piped free-form text.
        if RESERVED_OPTION in value:
            raise ValueError(f"option name {RESERVED_OPTION!r} is reserved")
        return value


@dataclass(frozen=True)
class ParsedTemplate:
    """A loaded template with its body and system text resolved."""

    name: str
    path: Path
    template: str
    template_path: Path
    system: Optional[tuple[Path, str]]
    input: PromptTemplate


# =========================================================
# LOADING
# =========================================================

def _read_body(template_file: Path, relative: str) -> tuple[Path, str]:
    body_path = (template_file.parent / relative).resolve()
    try:
        return body_path, body_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise TemplateParseFailure(str(body_path), f"Template contents not found: {exc}") from exc


def load_template(path: Path, name: str) -> ParsedTemplate:
    """Parse one template file and resolve its body and system text.

    Raises:
        TemplateParseFailure: Invalid TOML, schema violation, or missing body file.
        EmptyTemplate: Neither `template` nor `template_path` is declared.
    """
    try:
        with open(path, "rb") as f:
            raw = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as exc:
        raise TemplateParseFailure(str(path), str(exc)) from exc

    try:
        parsed = PromptTemplate.model_validate(raw)
    except ValidationError as exc:
        raise TemplateParseFailure(str(path), str(exc)) from exc

    for option_name, option in parsed.options.items():
        if (
            option.option_type is OptionType.BOOL
            and not option.array
            and option.default not in (None, False)
        ):
            logger.warning(
                "Template %s: default for bool option %r is ignored; flags default to false",
                name,
                option_name,
            )

    if parsed.template is not None:
        template_path, body = path, parsed.template
    elif parsed.template_path is not None:
        template_path, body = _read_body(path, parsed.template_path)
    else:
        raise EmptyTemplate(name)

    system = None
    if parsed.system is not None:
        system = (path, parsed.system)
    elif parsed.system_path is not None:
        system = _read_body(path, parsed.system_path)

    return ParsedTemplate(
        name=name,
        path=path,
        template=body,
        template_path=template_path,
        system=system,
        input=parsed,
    )
