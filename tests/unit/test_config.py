"""Tests for pipeline configuration loading."""

from __future__ import annotations

from pathlib import Path

import pytest

from storyloom.pipeline.config import (
    ModelsConfig,
    PipelineConfig,
    PipelineConfigError,
    RetryConfig,
    load_pipeline_config,
)

_ENV_VARS = (
    "STORYLOOM_TEXT_MODEL",
    "STORYLOOM_COVER_MODEL",
    "STORYLOOM_PAGE_MODEL",
    "STORYLOOM_DATA_DIR",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestPipelineConfig:
    def test_from_dict_empty_uses_defaults(self) -> None:
        config = PipelineConfig.from_dict({})

        assert config.models == ModelsConfig()
        assert config.retry == RetryConfig(max_attempts=3, base_delay=1.0)
        assert config.timeouts.text == 540.0
        assert config.timeouts.cover == 300.0
        assert config.timeouts.page == 240.0
        assert config.conflict_retries == 25
        assert config.thinking_budget is None
        assert config.database_path == Path(".storyloom") / "stories.db"

    def test_from_dict_with_sections(self) -> None:
        config = PipelineConfig.from_dict(
            {
                "models": {"text": "gpt-4o", "page": "gemini-2.5-flash-image-preview"},
                "retry": {"max_attempts": 5, "base_delay": 0.5},
                "timeouts": {"page": 60},
                "temperature": 0.7,
                "thinking_budget": 2048,
                "data_dir": "/tmp/stories",
            }
        )

        assert config.models.text == "gpt-4o"
        assert config.models.cover == "gpt-image-1"
        assert config.models.page == "gemini-2.5-flash-image-preview"
        assert config.retry.max_attempts == 5
        assert config.timeouts.page == 60.0
        assert config.temperature == 0.7
        assert config.thinking_budget == 2048
        assert config.blobs_path == Path("/tmp/stories/blobs")

    def test_env_overrides_file(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("STORYLOOM_COVER_MODEL", "placeholder")
        monkeypatch.setenv("STORYLOOM_DATA_DIR", "/var/lib/storyloom")

        config = PipelineConfig.from_dict({"models": {"cover": "gpt-image-1"}, "data_dir": "x"})

        assert config.models.cover == "placeholder"
        assert config.data_dir == Path("/var/lib/storyloom")

    @pytest.mark.parametrize(
        "data",
        [
            {"retry": {"max_attempts": 0}},
            {"retry": {"base_delay": -1}},
            {"timeouts": {"cover": 0}},
            {"conflict_retries": 0},
        ],
    )
    def test_invalid_values_rejected(self, data: dict) -> None:
        with pytest.raises(ValueError):
            PipelineConfig.from_dict(data)


class TestLoadPipelineConfig:
    def test_missing_default_file_gives_defaults(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.chdir(tmp_path)
        assert load_pipeline_config() == PipelineConfig.from_dict({})

    def test_reads_default_file_from_cwd(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        (tmp_path / "storyloom.yaml").write_text("models:\n  text: gpt-4o\n")
        monkeypatch.chdir(tmp_path)

        assert load_pipeline_config().models.text == "gpt-4o"

    def test_empty_file_gives_defaults(self, tmp_path: Path) -> None:
        path = tmp_path / "storyloom.yaml"
        path.write_text("")

        assert load_pipeline_config(path) == PipelineConfig.from_dict({})

    def test_missing_explicit_path_is_error(self, tmp_path: Path) -> None:
        with pytest.raises(PipelineConfigError, match="File not found"):
            load_pipeline_config(tmp_path / "nope.yaml")

    def test_non_mapping_is_error(self, tmp_path: Path) -> None:
        path = tmp_path / "storyloom.yaml"
        path.write_text("- a\n- b\n")

        with pytest.raises(PipelineConfigError, match="Expected a mapping"):
            load_pipeline_config(path)

    def test_invalid_value_is_wrapped(self, tmp_path: Path) -> None:
        path = tmp_path / "storyloom.yaml"
        path.write_text("retry:\n  max_attempts: 0\n")

        with pytest.raises(PipelineConfigError, match="max_attempts") as exc_info:
            load_pipeline_config(path)

        assert exc_info.value.path == path
