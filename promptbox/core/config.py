"""Configuration discovery and template lookup.

Architectural role:
    Finds `promptbox.toml` files for a base directory, merges their model
    defaults, and locates template files by name across the discovered
    template directories.

Discovery order (nearest first):
    1. The base directory and each of its ancestors.
    2. The user configuration directory (`$XDG_CONFIG_HOME/promptbox` or
       `~/.config/promptbox`).

Merge behavior:
    Model defaults fold from the farthest file to the nearest one, so nearer
    files win field by field. Template lookup walks directories nearest first and
    returns the first match.

Relevant environment variables:
    - `XDG_CONFIG_HOME`
    - `PROMPTBOX_CONFIG_DIR` (replaces the user configuration directory)
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from promptbox.core.errors import ConfigParseFailure, TemplateNotFound
from promptbox.llm.provider_config import ModelOptions, fold_model_options
from promptbox.prompting.templates import (
    TEMPLATE_SUFFIX,
    ModelInput,
    ParsedTemplate,
    load_template,
)


logger = logging.getLogger(__name__)

CONFIG_FILENAME = "promptbox.toml"
TEMPLATE_DIRNAME = "promptbox"


class ConfigFile(BaseModel):
    model_config = ConfigDict(extra="forbid")

    model: ModelInput = Field(default_factory=ModelInput)
    template_dirs: list[str] = Field(default_factory=list)


def user_config_dir() -> Path:
    override = os.getenv("PROMPTBOX_CONFIG_DIR")
    if override:
        return Path(override).expanduser()

    xdg = os.getenv("XDG_CONFIG_HOME")
    base = Path(xdg).expanduser() if xdg else Path.home() / ".config"
    return base / "promptbox"


def _candidate_dirs(base_dir: Path) -> list[Path]:
    base_dir = base_dir.resolve()
    dirs = [base_dir, *base_dir.parents]

    user_dir = user_config_dir()
    if user_dir not in dirs:
        dirs.append(user_dir)
    return dirs


def load_config_file(path: Path) -> ConfigFile:
    try:
        with open(path, "rb") as f:
            raw = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as exc:
        raise ConfigParseFailure(str(path), str(exc)) from exc

    try:
        return ConfigFile.model_validate(raw)
    except ValidationError as exc:
        raise ConfigParseFailure(str(path), str(exc)) from exc


@dataclass
class Config:
    """Merged configuration for one base directory."""

    model: ModelOptions = field(default_factory=ModelOptions)
    template_dirs: list[Path] = field(default_factory=list)

    @classmethod
    def from_directory(cls, base_dir: Path, defaults: Optional[ModelOptions] = None) -> "Config":
        """Discover and merge configuration for `base_dir`.

        Args:
            base_dir: Directory the command runs in.
            defaults: Lower-precedence model options (environment/backend
                defaults) the configuration files fold onto.
        """
        template_dirs: list[Path] = []
        layers: list[dict[str, Any]] = []

        for directory in _candidate_dirs(base_dir):
            config_path = directory / CONFIG_FILENAME
            if config_path.is_file():
                logger.info("Loading configuration from %s", config_path)
                config_file = load_config_file(config_path)
                layers.append(config_file.model.as_layer())
                template_dirs.extend(
                    (directory / extra).resolve() for extra in config_file.template_dirs
                )

            template_dir = directory / TEMPLATE_DIRNAME
            if template_dir.is_dir():
                template_dirs.append(template_dir)

        model = defaults or ModelOptions()
        # Farthest first so nearer files win.
        for layer in reversed(layers):
            model = fold_model_options(model, layer)

        return cls(model=model, template_dirs=template_dirs)

    def find_template(self, name: str) -> ParsedTemplate:
        """Load the first template named `name` from the template directories.

        Raises:
            TemplateNotFound: No directory contains `<name>.pb.toml`.
        """
        relative = name if name.endswith(TEMPLATE_SUFFIX) else f"{name}{TEMPLATE_SUFFIX}"

        for directory in self.template_dirs:
            candidate = directory / relative
            if candidate.is_file():
                logger.info("Using template %s", candidate)
                return load_template(candidate, name)

        raise TemplateNotFound(name, [str(d) for d in self.template_dirs])
