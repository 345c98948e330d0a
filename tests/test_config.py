from pathlib import Path

import pytest

from playrun.config import Settings, load_settings
from playrun.errors import ConfigurationError


def test_defaults(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    settings = load_settings(env={})

    assert settings.scripts_dir == Path("automation-scripts")
    assert settings.playbooks_dir == Path("orchestration/playbooks")
    assert settings.max_concurrency == 4
    assert settings.timeout_seconds is None
    assert not settings.fail_fast


def test_config_file_then_environment(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "playrun.yaml").write_text(
        "max_concurrency: 2\n"
        "scripts_dir: tools\n"
        "successCriteria:\n"
        "  minimumSuccessPercent: 90\n"
        "  allowedFailures: ['0402']\n",
        encoding="utf-8",
    )

    settings = load_settings(env={"PLAYRUN_MAX_CONCURRENCY": "8", "PLAYRUN_FAIL_FAST": "true"})

    assert settings.max_concurrency == 8
    assert settings.fail_fast is True
    assert settings.scripts_dir == Path("tools")
    criteria = settings.default_criteria
    assert criteria.minimum_success_percent == 90
    assert criteria.allowed_failures == ("0402",)


def test_explicit_config_path_must_exist(tmp_path):
    with pytest.raises(ConfigurationError, match="not found"):
        load_settings(tmp_path / "missing.yaml", env={})


@pytest.mark.parametrize(
    "env",
    [
        {"PLAYRUN_MAX_CONCURRENCY": "0"},
        {"PLAYRUN_MAX_CONCURRENCY": "many"},
        {"PLAYRUN_TIMEOUT": "-1"},
    ],
)
def test_invalid_values_are_configuration_errors(tmp_path, monkeypatch, env):
    monkeypatch.chdir(tmp_path)
    with pytest.raises(ConfigurationError):
        load_settings(env=env)


def test_unknown_config_keys_are_rejected(tmp_path):
    path = tmp_path / "c.yaml"
    path.write_text("max_concurency: 3\n", encoding="utf-8")

    with pytest.raises(ConfigurationError) as exc:
        load_settings(path, env={})
    assert exc.value.ref == "max_concurency"


def test_overrides_skip_none():
    settings = Settings(max_concurrency=3).with_overrides(max_concurrency=None, fail_fast=True)

    assert settings.max_concurrency == 3
    assert settings.fail_fast is True
