"""
SessionGuard Secret Loader — audit HMAC key delivery.

Reads secrets from TWO sources with strict priority (NO env var fallback):
  1. Secrets directory files (<SG_SECRETS_DIR>/audit_hmac_key), e.g. tmpfs
  2. *_FILE environment variables — Docker secrets / custom file paths

Features:
  • Fail-fast: startup aborts if a required secret is missing or weak
  • No secrets in logs: only the SOURCE and length are ever logged
  • Hot reload: secrets can be re-read at runtime after rotation

Usage:
    from sessionguard.secret_loader import get_secret
    key = get_secret("AUDIT_HMAC_KEY")  # raises RuntimeError if missing
"""
from __future__ import annotations

import logging
import os
import threading
import warnings
from pathlib import Path
from typing import Optional

logger = logging.getLogger("sessionguard.secret_loader")

_WEAK_VALUES = frozenset({
    "change-me-please", "change-me", "changeme", "secret", "secret-key",
    "password", "", "test", "test_key", "default", "12345", "admin",
})

_MIN_LENGTH = 8

# Map: SECRET_NAME → filename in the secrets directory
_SECRET_MAP = {
    "AUDIT_HMAC_KEY": "audit_hmac_key",
}

_REQUIRED_SECRETS = frozenset({"AUDIT_HMAC_KEY"})

_cache: dict[str, str] = {}
_lock = threading.Lock()
_loaded = False


def _secrets_dir() -> Path:
    return Path(os.getenv("SG_SECRETS_DIR", "/run/secrets"))


def _read_file_secret(filepath: Path) -> Optional[str]:
    """Read a secret from a file, stripping trailing whitespace."""
    try:
        if filepath.exists() and filepath.is_file():
            val = filepath.read_text(encoding="utf-8").strip()
            if val:
                return val
    except OSError as e:
        warnings.warn(f"SECRET_LOADER: Cannot read {filepath}: {e}", stacklevel=3)
    return None


def _load_secret(name: str) -> tuple[Optional[str], str]:
    """Returns (value, source); source is 'secrets_dir', 'file_env' or 'missing'."""
    filename = _SECRET_MAP.get(name, name.lower())

    val = _read_file_secret(_secrets_dir() / filename)
    if val is not None:
        return val, "secrets_dir"

    file_env = os.getenv(f"{name}_FILE")
    if file_env:
        val = _read_file_secret(Path(file_env))
        if val is not None:
            return val, "file_env"

    return None, "missing"


def _validate_secret(name: str, value: str, source: str) -> str:
    if value.lower() in _WEAK_VALUES:
        raise RuntimeError(
            f"FATAL: {name} has a weak/default value. "
            f"Source: {source}. Generate a strong value."
        )
    if len(value) < _MIN_LENGTH:
        raise RuntimeError(
            f"FATAL: {name} is too short ({len(value)} chars). "
            f"Minimum {_MIN_LENGTH} characters required."
        )
    return value


def load_all_secrets() -> dict[str, str]:
    """Load and validate every configured secret.

    Raises RuntimeError if a REQUIRED secret is missing or weak.
    """
    global _loaded
    loaded = {}
    for name in _SECRET_MAP:
        value, source = _load_secret(name)
        if value is None:
            if name in _REQUIRED_SECRETS:
                raise RuntimeError(
                    f"FATAL: Required secret {name} is missing. "
                    f"Checked: {_secrets_dir() / _SECRET_MAP[name]}, "
                    f"${name}_FILE env var."
                )
            continue
        loaded[name] = _validate_secret(name, value, source)
        # Log source (NEVER the value)
        logger.info("%s loaded from %s (%d chars)", name, source, len(value))

    with _lock:
        _cache.clear()
        _cache.update(loaded)
        _loaded = True
    return loaded


def get_secret(name: str, required: bool = True) -> str:
    """Cached secret value; loads on first use."""
    if not _loaded:
        load_all_secrets()
    with _lock:
        val = _cache.get(name)
    if val is None and required:
        raise RuntimeError(f"FATAL: Secret {name} not available.")
    return val or ""


def reload_secrets() -> None:
    """Re-read all secrets from their sources (key rotation)."""
    load_all_secrets()


def reset() -> None:
    """Forget cached secrets. Next get_secret() reloads from disk."""
    global _loaded
    with _lock:
        _cache.clear()
        _loaded = False
