"""Local storage hardening helpers."""

from __future__ import annotations

import json
import os
from pathlib import Path


def vault_home() -> Path:
    """Root of local state, overridable with ``AGENT_VAULT_HOME``."""
    override = os.getenv("AGENT_VAULT_HOME")
    return Path(override) if override else Path.home() / ".agent-vault"


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    os.chmod(path, 0o700)


def ensure_private_file(path: Path) -> None:
    if not path.exists():
        path.touch()
    os.chmod(path, 0o600)


def atomic_write_json(path: Path, payload: dict) -> None:
    """Write JSON via a temp file so readers never see a partial document."""
    tmp_path = path.with_suffix(path.suffix + f".tmp.{os.getpid()}")
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, sort_keys=True)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp_path, path)
    ensure_private_file(path)
