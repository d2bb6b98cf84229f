"""Unit tests for settings loading."""

import pytest

from nutsync import config
from nutsync.config import Settings, split_urls
from nutsync.relay import DEFAULT_RELAYS

ENV_VARS = [
    config.NSEC_ENV_VAR,
    config.RELAYS_ENV_VAR,
    config.MINTS_ENV_VAR,
    config.MINT_ENV_VAR,
    config.STATE_DIR_ENV_VAR,
    config.WALLET_MODE_ENV_VAR,
    config.EOSE_TIMEOUT_ENV_VAR,
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    # setenv first so values loaded from .env files are undone after the test
    for name in ENV_VARS:
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)


class TestSplitUrls:
    def test_deduplicates_in_order(self):
        assert split_urls("wss://a.com, wss://b.com,wss://a.com") == ["wss://a.com", "wss://b.com"]

    def test_strip_slash(self):
        assert split_urls("https://m.com/, https://m.com", strip_slash=True) == ["https://m.com"]

    def test_empty(self):
        assert split_urls(None) == []
        assert split_urls(" , ") == []


class TestSettings:
    def test_defaults(self, tmp_path):
        settings = Settings.from_env(tmp_path / "missing.env")
        assert settings.nsec is None
        assert settings.relays == list(DEFAULT_RELAYS)
        assert settings.mints == []
        assert settings.preferred_mint is None
        assert settings.wallet_mode == "nip60"

    def test_environment(self, monkeypatch, tmp_path):
        monkeypatch.setenv(config.NSEC_ENV_VAR, " nsec1abc ")
        monkeypatch.setenv(config.RELAYS_ENV_VAR, "wss://r.one,wss://r.two")
        monkeypatch.setenv(config.MINTS_ENV_VAR, "https://mint.a/,https://mint.b")
        monkeypatch.setenv(config.STATE_DIR_ENV_VAR, str(tmp_path))
        monkeypatch.setenv(config.WALLET_MODE_ENV_VAR, "Legacy")

        settings = Settings.from_env(tmp_path / "missing.env")

        assert settings.nsec == "nsec1abc"
        assert settings.relays == ["wss://r.one", "wss://r.two"]
        assert settings.mints == ["https://mint.a", "https://mint.b"]
        assert settings.preferred_mint == "https://mint.a"
        assert settings.state_dir == tmp_path
        assert settings.wallet_mode == "legacy"

    def test_preferred_mint_added(self, monkeypatch, tmp_path):
        monkeypatch.setenv(config.MINTS_ENV_VAR, "https://mint.a")
        monkeypatch.setenv(config.MINT_ENV_VAR, "https://mint.z/")
        settings = Settings.from_env(tmp_path / "missing.env")
        assert settings.mints == ["https://mint.z", "https://mint.a"]
        assert settings.preferred_mint == "https://mint.z"

    def test_env_file(self, monkeypatch, tmp_path):
        """Values come from the .env file unless the environment sets them."""
        env_file = tmp_path / ".env"
        env_file.write_text("CASHU_MINTS=https://from.file\nNUTSYNC_RELAYS=wss://file.relay\n")
        monkeypatch.setenv(config.RELAYS_ENV_VAR, "wss://env.relay")

        settings = Settings.from_env(env_file)

        assert settings.mints == ["https://from.file"]
        assert settings.relays == ["wss://env.relay"]

    def test_bad_wallet_mode(self, monkeypatch, tmp_path):
        monkeypatch.setenv(config.WALLET_MODE_ENV_VAR, "paper")
        with pytest.raises(ValueError):
            Settings.from_env(tmp_path / "missing.env")

    def test_eose_timeout(self, monkeypatch, tmp_path):
        assert Settings.from_env(tmp_path / "missing.env").eose_timeout == config.EOSE_TIMEOUT
        monkeypatch.setenv(config.EOSE_TIMEOUT_ENV_VAR, "2.5")
        assert Settings.from_env(tmp_path / "missing.env").eose_timeout == 2.5

    @pytest.mark.parametrize("value", ["0", "-1", "soon", "nan"])
    def test_bad_eose_timeout(self, monkeypatch, tmp_path, value):
        monkeypatch.setenv(config.EOSE_TIMEOUT_ENV_VAR, value)
        with pytest.raises(ValueError):
            Settings.from_env(tmp_path / "missing.env")
