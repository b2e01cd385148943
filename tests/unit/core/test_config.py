"""Unit tests for configuration discovery and template lookup."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from promptbox.core.config import Config, user_config_dir
from promptbox.core.errors import ConfigParseFailure, TemplateNotFound
from promptbox.llm.provider_config import ModelOptions


@pytest.mark.unit
def test_nearer_config_files_win(tmp_path: Path) -> None:
    project = tmp_path / "project"
    child = project / "child"
    child.mkdir(parents=True)
    (project / "promptbox.toml").write_text(
        '[model]\nmodel = "mistral"\ntemperature = 0.3\n', encoding="utf-8"
    )
    (child / "promptbox.toml").write_text("[model]\ntemperature = 0.7\n", encoding="utf-8")

    config = Config.from_directory(child)

    assert config.model.model == "mistral"
    assert config.model.temperature == 0.7


@pytest.mark.unit
def test_config_folds_onto_supplied_defaults(tmp_path: Path) -> None:
    (tmp_path / "promptbox.toml").write_text('[model]\nmodel = "phi3"\n', encoding="utf-8")
    defaults = ModelOptions(ollama_host="box:11434")

    config = Config.from_directory(tmp_path, defaults=defaults)

    assert config.model.model == "phi3"
    assert config.model.ollama_host == "box:11434"


@pytest.mark.unit
def test_user_config_dir_is_searched_last() -> None:
    user_dir = user_config_dir()
    assert user_dir == Path(os.environ["PROMPTBOX_CONFIG_DIR"])

    (user_dir / "promptbox.toml").write_text("[model]\ntop_k = 7\n", encoding="utf-8")

    assert Config.from_directory(user_dir.parent).model.top_k == 7


@pytest.mark.unit
def test_find_template_prefers_nearest_directory(tmp_path: Path) -> None:
    child = tmp_path / "child"
    (tmp_path / "promptbox").mkdir()
    (child / "promptbox").mkdir(parents=True)
    (tmp_path / "promptbox" / "t.pb.toml").write_text('template = "outer"\n', encoding="utf-8")
    (child / "promptbox" / "t.pb.toml").write_text('template = "inner"\n', encoding="utf-8")

    parsed = Config.from_directory(child).find_template("t")

    assert parsed.template == "inner"
    assert parsed.name == "t"


@pytest.mark.unit
def test_configured_template_dirs_are_searched(tmp_path: Path) -> None:
    shared = tmp_path / "shared-templates"
    shared.mkdir()
    (shared / "greet.pb.toml").write_text('template = "hello"\n', encoding="utf-8")
    (tmp_path / "promptbox.toml").write_text(
        'template_dirs = ["shared-templates"]\n', encoding="utf-8"
    )

    assert Config.from_directory(tmp_path).find_template("greet").template == "hello"


@pytest.mark.unit
def test_missing_template_raises(tmp_path: Path) -> None:
    with pytest.raises(TemplateNotFound) as excinfo:
        Config.from_directory(tmp_path).find_template("nope")

    assert excinfo.value.name == "nope"


@pytest.mark.unit
def test_invalid_config_file_raises(tmp_path: Path) -> None:
    (tmp_path / "promptbox.toml").write_text("[model\n", encoding="utf-8")

    with pytest.raises(ConfigParseFailure):
        Config.from_directory(tmp_path)
