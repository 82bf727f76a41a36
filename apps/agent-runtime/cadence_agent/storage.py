"""Owner-only file helpers for runtime state (vault, salt, keystore copies)."""

from __future__ import annotations

import json
import os
import pathlib
import stat
import tempfile
from typing import Any

from cadence_agent.errors import StateDirError, VaultSecurityError, VaultStoreError


def ensure_private_dir(path: pathlib.Path) -> None:
    try:
        path.mkdir(mode=0o700, parents=True, exist_ok=True)
        if os.name != "nt":
            os.chmod(path, 0o700)
    except OSError as exc:
        raise StateDirError(f"Unable to prepare directory '{path}': {exc}", details={"path": str(path)}) from exc


def _is_secure_permissions(path: pathlib.Path, expected_mode: int) -> bool:
    if os.name == "nt":
        return True
    mode = stat.S_IMODE(path.stat().st_mode)
    return mode == expected_mode


def assert_secure_permissions(path: pathlib.Path, expected_mode: int, kind: str) -> None:
    if not path.exists():
        return
    if not _is_secure_permissions(path, expected_mode):
        raise VaultSecurityError(
            f"Unsafe {kind} permissions for '{path}'. Expected {oct(expected_mode)} owner-only permissions.",
            details={"path": str(path)},
        )


def read_json(path: pathlib.Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except Exception as exc:
        raise VaultStoreError(f"Invalid JSON in '{path}': {exc}") from exc
    if not isinstance(data, dict):
        raise VaultStoreError(f"'{path}' must contain a JSON object.")
    return data


def write_bytes_atomic(path: pathlib.Path, data: bytes) -> None:
    """Write via a sibling temp file and rename; readers never see a partial file."""
    ensure_private_dir(path.parent)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        if os.name != "nt":
            os.chmod(tmp_name, 0o600)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def write_json_atomic(path: pathlib.Path, payload: dict[str, Any]) -> None:
    write_bytes_atomic(path, json.dumps(payload, indent=2).encode("utf-8"))
