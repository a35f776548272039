from pathlib import Path

from relayci.config import Settings, get_settings


def test_defaults(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    settings = Settings()
    assert settings.max_workers is None
    assert settings.fail_fast is False
    assert settings.secret_prefix == "RELAYCI_SECRET_"
    assert settings.artifact_dir == Path(".relayci/artifacts")


def test_environment_overrides(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("RELAYCI_MAX_WORKERS", "3")
    monkeypatch.setenv("RELAYCI_FAIL_FAST", "true")
    monkeypatch.setenv("RELAYCI_WEBHOOK_URL", "http://hooks.local")
    settings = Settings()
    assert settings.max_workers == 3
    assert settings.fail_fast is True
    assert settings.webhook_url == "http://hooks.local"


def test_dotenv_file(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    (tmp_path / ".env").write_text("RELAYCI_GRACE_PERIOD=2.5\n")
    assert Settings().grace_period == 2.5


def test_get_settings_reads_current_environment(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("RELAYCI_LOG_LEVEL", "DEBUG")
    assert get_settings().log_level == "DEBUG"
    monkeypatch.setenv("RELAYCI_LOG_LEVEL", "WARNING")
    assert get_settings().log_level == "WARNING"
