import pytest

from utils.app_config import AppConfig


def test_defaults(monkeypatch):
    for name in ("CHAT_MODEL", "REASONING_BUDGET", "GENERATION_TIMEOUT_SECONDS", "LOG_LEVEL", "SYSTEM_PROMPT_PATH"):
        monkeypatch.delenv(name, raising=False)

    config = AppConfig.from_env()

    assert config.chat_model == "gpt-5"
    assert config.reasoning_budget == 8192
    assert config.generation_timeout is None
    assert config.log_level == "INFO"
    assert config.system_prompt_path.name == "system.txt"


def test_values_from_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("CHAT_MODEL", "gpt-test")
    monkeypatch.setenv("REASONING_BUDGET", "2048")
    monkeypatch.setenv("GENERATION_TIMEOUT_SECONDS", "30")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    monkeypatch.setenv("SYSTEM_PROMPT_PATH", str(tmp_path / "prompt.txt"))

    config = AppConfig.from_env()

    assert config.chat_model == "gpt-test"
    assert config.reasoning_budget == 2048
    assert config.generation_timeout == 30.0
    assert config.log_level == "DEBUG"
    assert config.system_prompt_path == tmp_path / "prompt.txt"


def test_invalid_numbers_are_reported(monkeypatch):
    monkeypatch.setenv("REASONING_BUDGET", "lots")
    with pytest.raises(RuntimeError):
        AppConfig.from_env()

    monkeypatch.setenv("REASONING_BUDGET", "8192")
    monkeypatch.setenv("GENERATION_TIMEOUT_SECONDS", "soon")
    with pytest.raises(RuntimeError):
        AppConfig.from_env()
