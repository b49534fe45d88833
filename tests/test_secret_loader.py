"""
Unit Tests — secret_loader

Tests audit key loading from the secrets dir and *_FILE, weak-secret
rejection and fail-fast behaviour.
"""
import logging

import pytest

from sessionguard import secret_loader as sl

from conftest import TEST_SECRET


class TestSecretLoading:

    def test_load_from_secrets_dir(self):
        assert sl.load_all_secrets() == {"AUDIT_HMAC_KEY": TEST_SECRET}

    def test_get_secret_lazy_loads(self):
        assert sl.get_secret("AUDIT_HMAC_KEY") == TEST_SECRET

    def test_unknown_required_secret_raises(self):
        with pytest.raises(RuntimeError, match="not available"):
            sl.get_secret("NONEXISTENT_SECRET")

    def test_unknown_optional_secret_is_empty(self):
        assert sl.get_secret("NONEXISTENT_SECRET", required=False) == ""

    def test_file_env_fallback(self, tmp_path, monkeypatch):
        (tmp_path / "secrets" / "audit_hmac_key").unlink()
        alt = tmp_path / "alt_key"
        alt.write_text("docker-secret-audit-key-0987654321\n", encoding="utf-8")
        monkeypatch.setenv("AUDIT_HMAC_KEY_FILE", str(alt))
        assert sl.get_secret("AUDIT_HMAC_KEY") == "docker-secret-audit-key-0987654321"

    def test_no_plain_env_fallback(self, tmp_path, monkeypatch):
        (tmp_path / "secrets" / "audit_hmac_key").unlink()
        monkeypatch.setenv("AUDIT_HMAC_KEY", "plain-env-value-should-be-ignored")
        with pytest.raises(RuntimeError, match="missing"):
            sl.load_all_secrets()

    def test_value_never_logged(self, caplog):
        with caplog.at_level(logging.INFO, logger="sessionguard.secret_loader"):
            sl.load_all_secrets()
        assert "AUDIT_HMAC_KEY loaded from secrets_dir" in caplog.text
        assert TEST_SECRET not in caplog.text

    def test_reload_picks_up_rotation(self, tmp_path):
        sl.load_all_secrets()
        (tmp_path / "secrets" / "audit_hmac_key").write_text("rotated-audit-key-abcdefgh", encoding="utf-8")
        sl.reload_secrets()
        assert sl.get_secret("AUDIT_HMAC_KEY") == "rotated-audit-key-abcdefgh"


class TestWeakSecrets:

    @pytest.mark.parametrize("value", ["changeme", "secret-key", "test_key", "PASSWORD"])
    def test_weak_values_rejected(self, tmp_path, value):
        (tmp_path / "secrets" / "audit_hmac_key").write_text(value, encoding="utf-8")
        with pytest.raises(RuntimeError, match="weak"):
            sl.load_all_secrets()

    def test_short_value_rejected(self, tmp_path):
        (tmp_path / "secrets" / "audit_hmac_key").write_text("abc123", encoding="utf-8")
        with pytest.raises(RuntimeError, match="too short"):
            sl.load_all_secrets()
