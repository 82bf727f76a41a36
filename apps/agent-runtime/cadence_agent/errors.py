"""Error taxonomy shared by the vault, supervisor and control surface.

Every error carries a stable machine code plus an optional operator hint so the
CLI and control surface can turn it into a `{"ok": false, ...}` payload without
string matching.
"""

from __future__ import annotations

from typing import Any


class CadenceError(Exception):
    """Base error with a stable code, an operator hint and structured details."""

    code = "runtime_error"
    default_hint: str | None = None

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        action_hint: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        if code:
            self.code = code
        self.action_hint = action_hint or self.default_hint
        self.details = details or {}

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"ok": False, "code": self.code, "message": str(self)}
        if self.action_hint:
            payload["actionHint"] = self.action_hint
        if self.details:
            payload["details"] = self.details
        return payload


class ConfigError(CadenceError):
    """Runtime configuration (env vars, chain configs) is invalid."""

    code = "config_invalid"
    default_hint = "Fix the named environment variable or config file and retry."


class InvalidInput(CadenceError):
    """Caller supplied an unknown action type, chain or malformed parameter."""

    code = "invalid_input"


class VaultStoreError(CadenceError):
    """Vault files are unreadable or structurally invalid."""

    code = "vault_store_invalid"
    default_hint = "Repair or remove the vault store file and retry."


class StateDirError(CadenceError):
    """A runtime state directory cannot be created or secured."""

    code = "state_dir_unavailable"
    default_hint = "Check that the state directory path exists and is writable by the runtime user."


class VaultSecurityError(CadenceError):
    """Vault directory or file permissions are unsafe."""

    code = "unsafe_permissions"
    default_hint = "Restrict permissions to owner-only (0700/0600) and retry."


class VaultLocked(CadenceError):
    """Operation needs the vault unlocked."""

    code = "vault_locked"
    default_hint = "Unlock the vault with the master passphrase first."


class InvalidPassphrase(CadenceError):
    """Master passphrase failed to authenticate the vault store."""

    code = "invalid_passphrase"
    default_hint = "Re-enter the master passphrase."


class NoCredential(CadenceError):
    """No identity-specific or vault-default secret is available."""

    code = "no_credential"
    default_hint = "Store a credential for the identity or unlock the vault."


class AlreadyRunning(CadenceError):
    """A worker is already live for this (action-type, chain, identity) key."""

    code = "already_running"
    default_hint = "Stop the running worker before starting it again."


class NotRunning(CadenceError):
    """No live worker matched the request."""

    code = "not_running"


class SpawnFailure(CadenceError):
    """A worker process or the chain agent could not be launched at all."""

    code = "spawn_failed"
    default_hint = "Verify the runtime interpreter and chain agent binary are installed."


class SubprocessTimeout(CadenceError):
    """A subprocess call exceeded its timeout."""

    code = "timeout"

    def __init__(self, kind: str, timeout_sec: int, cmd: list[str]):
        # argv[0] and the subcommand only; later argv entries may carry parameters.
        shown = " ".join(cmd[:2])
        super().__init__(f"Timed out after {timeout_sec}s running: {shown}")
        self.kind = kind
        self.timeout_sec = timeout_sec
        self.cmd = cmd


class LockTimeout(CadenceError):
    """The per-identity submission lock could not be acquired in time."""

    code = "lock_timeout"
