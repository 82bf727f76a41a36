"""Adapter around the external chain agent CLI and its outcome classifier.

The chain agent signs and broadcasts on behalf of an identity. It is expected
to answer every invocation with one JSON object `{"ok", "code", "message", ...}`
on stdout; when it does not, the reply text is matched against known error
fragments as a degraded fallback.

Outcomes are plain dicts: `{"classification", "code", "message", "payload"}`.
"""

from __future__ import annotations

import json
import logging
import os
import pathlib
import re
import shutil
import subprocess
from typing import Any, Callable

from Crypto.Hash import keccak

from cadence_agent import config
from cadence_agent.errors import SpawnFailure, SubprocessTimeout

logger = logging.getLogger(__name__)

AGENT_BIN_NAME = "cadence-chain-agent"
SECRET_ENV = "CADENCE_AGENT_PASSWORD"

SUCCESS = "success"
ON_COOLDOWN = "on_cooldown"
TEMPORARILY_RESTRICTED = "temporarily_restricted"
ALREADY_AT_TARGET = "already_at_target"
INACTIVE_ON_CHAIN = "inactive_on_chain"
INSUFFICIENT_AUTHORIZATION = "insufficient_authorization"
TRANSIENT_NETWORK_ERROR = "transient_network_error"
UNCLASSIFIED = "unclassified"

CLASSIFICATIONS = (
    SUCCESS,
    ON_COOLDOWN,
    TEMPORARILY_RESTRICTED,
    ALREADY_AT_TARGET,
    INACTIVE_ON_CHAIN,
    INSUFFICIENT_AUTHORIZATION,
    TRANSIENT_NETWORK_ERROR,
    UNCLASSIFIED,
)

# Structured reply codes, including the aliases agents commonly emit.
CODE_CLASSIFICATIONS = {
    "ok": SUCCESS,
    "success": SUCCESS,
    "cooldown": ON_COOLDOWN,
    "on_cooldown": ON_COOLDOWN,
    "jailed": TEMPORARILY_RESTRICTED,
    "restricted": TEMPORARILY_RESTRICTED,
    "suspended": TEMPORARILY_RESTRICTED,
    "temporarily_restricted": TEMPORARILY_RESTRICTED,
    "at_target": ALREADY_AT_TARGET,
    "already_at_target": ALREADY_AT_TARGET,
    "not_active": INACTIVE_ON_CHAIN,
    "inactive": INACTIVE_ON_CHAIN,
    "inactive_on_chain": INACTIVE_ON_CHAIN,
    "not_authorized": INSUFFICIENT_AUTHORIZATION,
    "unauthorized": INSUFFICIENT_AUTHORIZATION,
    "insufficient_allowance": INSUFFICIENT_AUTHORIZATION,
    "insufficient_authorization": INSUFFICIENT_AUTHORIZATION,
    "timeout": TRANSIENT_NETWORK_ERROR,
    "rpc_error": TRANSIENT_NETWORK_ERROR,
    "network_error": TRANSIENT_NETWORK_ERROR,
    "nonce_conflict": TRANSIENT_NETWORK_ERROR,
    "send_failed": TRANSIENT_NETWORK_ERROR,
    "transient_network_error": TRANSIENT_NETWORK_ERROR,
}

# Checked in order; the first matching group wins.
TEXT_FRAGMENTS: tuple[tuple[str, tuple[str, ...]], ...] = (
    (TEMPORARILY_RESTRICTED, ("jail", "suspended")),
    (ON_COOLDOWN, ("cooldown", "cannot train yet", "too soon")),
    (ALREADY_AT_TARGET, ("already at", "already in", "same city")),
    (INACTIVE_ON_CHAIN, ("not active",)),
    (INSUFFICIENT_AUTHORIZATION, ("allowance", "not approved")),
    (
        TRANSIENT_NETWORK_ERROR,
        (
            "-32000",
            "internal_error",
            "failed to send transaction",
            "timed out",
            "timeout",
            "connection",
            "nonce too low",
            "replacement transaction underpriced",
            "rate limit",
            "too many requests",
            "429",
        ),
    ),
)

# A zero exit code without a structured reply still counts as a failure when
# the text reports one of these.
SUCCESS_EXIT_OVERRIDES = (TEMPORARILY_RESTRICTED, ON_COOLDOWN)


def outcome(classification: str, message: str = "", *, code: str | None = None, payload: dict[str, Any] | None = None) -> dict[str, Any]:
    return {"classification": classification, "code": code, "message": message, "payload": payload or {}}


def truncate(text: str, limit: int = config.MAX_ERROR_TEXT) -> str:
    text = text.strip()
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def is_hex_address(value: str) -> bool:
    return isinstance(value, str) and re.fullmatch(r"0x[a-fA-F0-9]{40}", value) is not None


def to_checksum_address(value: str) -> str:
    """EIP-55 mixed-case form of a 20-byte hex address."""
    if not is_hex_address(value):
        raise ValueError(f"Not a hex address: {value!r}")
    lowered = value[2:].lower()
    digest = keccak.new(digest_bits=256)
    digest.update(lowered.encode("ascii"))
    hashed = digest.hexdigest()
    return "0x" + "".join(ch.upper() if int(hashed[i], 16) >= 8 else ch for i, ch in enumerate(lowered))


def parse_reply(stdout: str) -> dict[str, Any] | None:
    """Last stdout line that decodes to a JSON object, if any."""
    for line in reversed((stdout or "").strip().splitlines()):
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            data = json.loads(line)
        except ValueError:
            continue
        if isinstance(data, dict):
            return data
    return None


def classify_text(text: str) -> str | None:
    normalized = text.lower()
    for classification, fragments in TEXT_FRAGMENTS:
        if any(fragment in normalized for fragment in fragments):
            return classification
    return None


def classify_outcome(returncode: int, stdout: str, stderr: str) -> dict[str, Any]:
    reply = parse_reply(stdout)
    if reply is not None and "ok" in reply:
        message = str(reply.get("message") or "")
        if reply.get("ok") is True:
            return outcome(SUCCESS, message, code=str(reply.get("code") or "ok"), payload=reply)
        code = str(reply.get("code") or "").strip().lower()
        mapped = CODE_CLASSIFICATIONS.get(code)
        if mapped is not None and mapped != SUCCESS:
            return outcome(mapped, message, code=code, payload=reply)
        # Unknown code: fall back to the text of the reply.
        text = " ".join(part for part in [message, stderr] if part)
        matched = classify_text(text)
        return outcome(matched or UNCLASSIFIED, truncate(text), code=code or None, payload=reply)

    text = "\n".join(part for part in [stdout, stderr] if part and part.strip())
    matched = classify_text(text)
    if returncode == 0:
        if matched in SUCCESS_EXIT_OVERRIDES:
            return outcome(matched, truncate(text))
        return outcome(SUCCESS, truncate(text))
    if matched is not None:
        return outcome(matched, truncate(text))
    return outcome(UNCLASSIFIED, truncate(text) or f"chain agent exited with status {returncode}")


def find_agent_bin() -> str | None:
    # Service managers often run with a minimal PATH; fall back to the
    # runtime's own bin directory after PATH.
    candidates: list[str] = []
    explicit = (os.environ.get("CADENCE_AGENT_BIN") or "").strip()
    if explicit:
        candidates.append(explicit)

    which_agent = shutil.which(AGENT_BIN_NAME)
    if which_agent:
        candidates.append(which_agent)

    candidates.append(str(config.app_dir() / "bin" / AGENT_BIN_NAME))

    for entry in candidates:
        try:
            path = pathlib.Path(entry).expanduser()
            if path.is_file() and os.access(path, os.X_OK):
                return str(path)
        except OSError:
            continue
    return None


def _run_subprocess(
    cmd: list[str], *, timeout_sec: int, kind: str, env: dict[str, str] | None = None
) -> subprocess.CompletedProcess[str]:
    try:
        return subprocess.run(cmd, text=True, capture_output=True, timeout=timeout_sec, env=env)
    except subprocess.TimeoutExpired as exc:
        raise SubprocessTimeout(kind=kind, timeout_sec=timeout_sec, cmd=cmd) from exc


class ChainAgent:
    def __init__(
        self,
        binary: str | None = None,
        *,
        timeout_sec: int | None = None,
        query_timeout_sec: int | None = None,
        rpc_url_for: Callable[[str], str | None] = config.chain_rpc_url,
    ):
        self._binary = binary
        self.timeout_sec = timeout_sec or config.agent_timeout_sec()
        self.query_timeout_sec = query_timeout_sec or config.agent_query_timeout_sec()
        self._rpc_url_for = rpc_url_for

    def require_bin(self) -> str:
        if self._binary is None:
            self._binary = find_agent_bin()
        if not self._binary:
            raise SpawnFailure(
                f"Missing dependency: {AGENT_BIN_NAME}.",
                action_hint=f"Install {AGENT_BIN_NAME} on PATH or set CADENCE_AGENT_BIN.",
            )
        return self._binary

    def _invoke(self, args: list[str], secret: str, *, timeout_sec: int, kind: str) -> subprocess.CompletedProcess[str]:
        cmd = [self.require_bin(), *args, "--json"]
        env = config.child_env()
        env[SECRET_ENV] = secret
        try:
            return _run_subprocess(cmd, timeout_sec=timeout_sec, kind=kind, env=env)
        except (FileNotFoundError, PermissionError) as exc:
            raise SpawnFailure(f"Unable to launch chain agent: {exc}", details={"bin": cmd[0]}) from exc

    def _attempt(self, args: list[str], secret: str, *, timeout_sec: int, kind: str) -> dict[str, Any]:
        try:
            proc = self._invoke(args, secret, timeout_sec=timeout_sec, kind=kind)
        except SubprocessTimeout as exc:
            return outcome(TRANSIENT_NETWORK_ERROR, str(exc), code="timeout")
        return classify_outcome(proc.returncode, proc.stdout or "", proc.stderr or "")

    def _with_rpc(self, args: list[str], chain: str) -> list[str]:
        rpc_url = self._rpc_url_for(chain)
        if rpc_url:
            return [*args, "--rpc-url", rpc_url]
        return args

    def run_action(
        self,
        action_type: str,
        chain: str,
        account: str,
        secret: str,
        *,
        target: str | None = None,
        params: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        args = ["action", "--type", action_type, "--chain", chain, "--account", account]
        if target is not None:
            args += ["--target", str(target)]
        for key, value in sorted((params or {}).items()):
            args += ["--param", f"{key}={value}"]
        return self._attempt(self._with_rpc(args, chain), secret, timeout_sec=self.timeout_sec, kind="action")

    def check_authorization(self, action_type: str, chain: str, account: str, secret: str) -> dict[str, Any]:
        args = ["authorization", "check", "--type", action_type, "--chain", chain, "--account", account]
        return self._attempt(self._with_rpc(args, chain), secret, timeout_sec=self.query_timeout_sec, kind="authorization_check")

    def grant_authorization(self, action_type: str, chain: str, account: str, secret: str) -> dict[str, Any]:
        args = ["authorization", "grant", "--type", action_type, "--chain", chain, "--account", account]
        return self._attempt(self._with_rpc(args, chain), secret, timeout_sec=self.timeout_sec, kind="authorization_grant")

    def position(self, chain: str, account: str, secret: str) -> str | None:
        args = self._with_rpc(["position", "--chain", chain, "--account", account], chain)
        proc = self._invoke(args, secret, timeout_sec=self.query_timeout_sec, kind="position")
        reply = parse_reply(proc.stdout or "")
        if proc.returncode != 0 or not reply or reply.get("ok") is not True:
            return None
        value = reply.get("position")
        return None if value is None else str(value)

    def address(self, account: str, secret: str) -> str | None:
        proc = self._invoke(["address", "--account", account], secret, timeout_sec=self.query_timeout_sec, kind="address")
        reply = parse_reply(proc.stdout or "")
        if proc.returncode != 0 or not reply or reply.get("ok") is not True:
            return None
        value = str(reply.get("address") or "")
        return to_checksum_address(value) if is_hex_address(value) else None
