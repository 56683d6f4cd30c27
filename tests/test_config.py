import pytest

from wordsmith.config import ConfigError, WritingConfig

ENV_VARS = (
    "WRITING_SERVER_URL",
    "WRITING_API_KEY",
    "WRITING_MODEL",
    "WRITING_SAVE_DEBOUNCE_MS",
    "WRITING_TIMEOUT_S",
    "WRITING_DATA_DIR",
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_defaults_from_env(clean_env):
    clean_env.setenv("WRITING_SERVER_URL", "http://localhost:8000")

    config = WritingConfig.from_env()
    config.validate()

    assert config.api_key is None
    assert config.model is None
    assert config.save_debounce_ms == 800
    assert config.save_debounce_s == 0.8
    assert config.max_matches == 500
    assert config.usage_path.name == "usage.json"


def test_env_overrides(clean_env, tmp_path):
    clean_env.setenv("WRITING_SERVER_URL", "https://writing.example")
    clean_env.setenv("WRITING_API_KEY", "secret")
    clean_env.setenv("WRITING_MODEL", "gpt-4o-mini")
    clean_env.setenv("WRITING_SAVE_DEBOUNCE_MS", "250")
    clean_env.setenv("WRITING_DATA_DIR", str(tmp_path))

    config = WritingConfig.from_env()

    assert config.api_key == "secret"
    assert config.model == "gpt-4o-mini"
    assert config.save_debounce_s == 0.25
    assert config.usage_path == tmp_path / "usage.json"


def test_missing_server_url(clean_env):
    with pytest.raises(ConfigError, match="WRITING_SERVER_URL"):
        WritingConfig.from_env()


def test_non_numeric_debounce(clean_env):
    clean_env.setenv("WRITING_SERVER_URL", "http://localhost:8000")
    clean_env.setenv("WRITING_SAVE_DEBOUNCE_MS", "soon")

    with pytest.raises(ConfigError, match="must be an integer"):
        WritingConfig.from_env()


@pytest.mark.parametrize(
    "changes, message",
    [
        ({"server_url": "localhost:8000"}, "server_url"),
        ({"save_debounce_ms": -1}, "save_debounce_ms"),
        ({"timeout_s": 0}, "timeout_s"),
        ({"max_matches": 0}, "max_matches"),
    ],
)
def test_validate_rejects_bad_values(clean_env, changes, message):
    clean_env.setenv("WRITING_SERVER_URL", "http://localhost:8000")
    config = WritingConfig.from_env()
    for key, value in changes.items():
        setattr(config, key, value)

    with pytest.raises(ConfigError, match=message):
        config.validate()
