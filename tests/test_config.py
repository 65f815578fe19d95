import pytest
from pydantic import ValidationError

from deferq.config import Settings
from deferq.core.worker import DEFAULT_MAX_ATTEMPTS


@pytest.fixture(autouse=True)
def _isolate(monkeypatch: pytest.MonkeyPatch, tmp_path):
    monkeypatch.chdir(tmp_path)


def test_defaults():
    settings = Settings()
    assert settings.max_attempts == DEFAULT_MAX_ATTEMPTS
    assert settings.cache_ttl == 30.0
    assert settings.lock_ttl == 30.0
    assert settings.lock_retry_count == 0
    assert settings.partitions == 1


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("DEFERQ_REDIS_URL", "redis://cache:6379/2")
    monkeypatch.setenv("DEFERQ_MAX_ATTEMPTS", "7")
    monkeypatch.setenv("DEFERQ_LOG_JSON", "false")
    settings = Settings()
    assert settings.redis_url == "redis://cache:6379/2"
    assert settings.max_attempts == 7
    assert settings.log_json is False


def test_dotenv_file_is_read(tmp_path):
    (tmp_path / ".env").write_text("DEFERQ_PARTITIONS=4\n")
    assert Settings().partitions == 4


@pytest.mark.parametrize("name", ["DEFERQ_MAX_ATTEMPTS", "DEFERQ_PARTITIONS"])
def test_rejects_non_positive_counts(monkeypatch: pytest.MonkeyPatch, name: str):
    monkeypatch.setenv(name, "0")
    with pytest.raises(ValidationError):
        Settings()
