"""Runtime configuration: state paths, env-driven timeouts and the action catalogue."""

from __future__ import annotations

import json
import os
import pathlib
import re
from typing import Any

from cadence_agent.errors import ConfigError, InvalidInput

REPO_ROOT = pathlib.Path(__file__).resolve().parents[3]
CHAIN_CONFIG_DIR = REPO_ROOT / "config" / "chains"

DEFAULT_CHAINS = ("pls", "bnb")
DEFAULT_AGENT_TIMEOUT_SEC = 180
DEFAULT_AGENT_QUERY_TIMEOUT_SEC = 30
DEFAULT_LOCK_TIMEOUT_SEC = 120
DEFAULT_SYNC_INTERVAL_SEC = 30
DEFAULT_WATCH_DEBOUNCE_SEC = 1
WORKER_LOG_LIMIT = 100
EVENT_LOG_LIMIT = 1000
MAX_ERROR_TEXT = 300

# Base cooldowns include a one minute buffer over the game-side cooldown.
ACTION_TYPES: dict[str, dict[str, Any]] = {
    "crime": {
        "cooldownMinutes": 16,
        "alternating": False,
        "requiresAuthorization": False,
        "defaults": {"crimeType": "0"},
    },
    "nickcar": {
        "cooldownMinutes": 31,
        "alternating": False,
        "requiresAuthorization": False,
        "defaults": {},
    },
    "killskill": {
        "cooldownMinutes": 46,
        "alternating": False,
        "requiresAuthorization": True,
        "defaults": {"trainType": "0"},
    },
    "travel": {
        "cooldownMinutes": 65,
        "alternating": True,
        "requiresAuthorization": False,
        "defaults": {"startCity": "0", "endCity": "1", "travelType": "2", "itemId": "0"},
        "targetParams": ("startCity", "endCity"),
        "modeParam": "travelType",
        # train, car/motorcycle, airplane; each carries a five minute arrival buffer
        "modeCooldownMinutes": {"0": 245, "1": 125, "2": 65},
    },
}


# Stripped from every child process environment; each child gets only the secret it needs.
SECRET_ENV_VARS = (
    "CADENCE_MASTER_PASSPHRASE",
    "CADENCE_NEW_PASSPHRASE",
    "CADENCE_IMPORT_SECRET",
    "CADENCE_WORKER_SECRET",
    "CADENCE_AGENT_PASSWORD",
)


def child_env() -> dict[str, str]:
    env = os.environ.copy()
    for name in SECRET_ENV_VARS:
        env.pop(name, None)
    return env


def app_dir() -> pathlib.Path:
    return pathlib.Path(os.environ.get("CADENCE_AGENT_HOME", str(pathlib.Path.home() / ".cadence-agent")))


def identity_source_dir() -> pathlib.Path:
    raw = (os.environ.get("CADENCE_IDENTITY_SOURCE") or "").strip()
    if raw:
        return pathlib.Path(raw).expanduser()
    return pathlib.Path.home() / ".foundry" / "keystores"


def local_identity_dir() -> pathlib.Path:
    return app_dir() / "keystores"


def lock_dir() -> pathlib.Path:
    return app_dir() / "locks"


def events_file() -> pathlib.Path:
    return app_dir() / "events.jsonl"


def _env_int(name: str, default: int, *, minimum: int = 1) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    if not re.fullmatch(r"[0-9]+", raw):
        raise ConfigError(f"{name} must be an integer.", details={"variable": name})
    value = int(raw)
    if value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}.", details={"variable": name})
    return value


def agent_timeout_sec() -> int:
    return _env_int("CADENCE_AGENT_TIMEOUT_SEC", DEFAULT_AGENT_TIMEOUT_SEC)


def agent_query_timeout_sec() -> int:
    return _env_int("CADENCE_AGENT_QUERY_TIMEOUT_SEC", DEFAULT_AGENT_QUERY_TIMEOUT_SEC)


def lock_timeout_sec() -> int:
    return _env_int("CADENCE_LOCK_TIMEOUT_SEC", DEFAULT_LOCK_TIMEOUT_SEC)


def sync_interval_sec() -> int:
    return _env_int("CADENCE_SYNC_INTERVAL_SEC", DEFAULT_SYNC_INTERVAL_SEC)


def _env_list(name: str) -> list[str]:
    raw = os.environ.get(name) or ""
    return [item.strip().lower() for item in raw.split(",") if item.strip()]


def configured_chains() -> list[str]:
    chains = _env_list("CADENCE_CHAINS")
    if not chains:
        return list(DEFAULT_CHAINS)
    for chain in chains:
        if not re.fullmatch(r"[a-z0-9_]+", chain):
            raise ConfigError(f"CADENCE_CHAINS contains invalid chain '{chain}'.", details={"variable": "CADENCE_CHAINS"})
    return chains


def configured_action_types() -> list[str]:
    actions = _env_list("CADENCE_ACTIONS")
    if not actions:
        return list(ACTION_TYPES)
    unknown = [a for a in actions if a not in ACTION_TYPES]
    if unknown:
        raise ConfigError(f"CADENCE_ACTIONS contains unknown action(s): {', '.join(unknown)}", details={"variable": "CADENCE_ACTIONS"})
    return actions


def action_spec(action_type: str) -> dict[str, Any]:
    spec = ACTION_TYPES.get(action_type)
    if spec is None:
        raise InvalidInput(
            f"Invalid action type: {action_type}",
            action_hint=f"Use one of: {', '.join(ACTION_TYPES)}",
            details={"actionType": action_type},
        )
    return spec


def require_chain(chain: str, chains: list[str] | None = None) -> str:
    allowed = chains if chains is not None else configured_chains()
    if chain not in allowed:
        raise InvalidInput(
            f"Invalid chain: {chain}",
            action_hint=f"Use one of: {', '.join(allowed)}",
            details={"chain": chain},
        )
    return chain


def action_params(action_type: str, params: dict[str, Any] | None = None) -> dict[str, str]:
    """Merge caller params over catalogue defaults; all values become strings."""
    spec = action_spec(action_type)
    merged: dict[str, str] = {key: str(value) for key, value in spec.get("defaults", {}).items()}
    for key, value in (params or {}).items():
        if value is None:
            continue
        if not re.fullmatch(r"[A-Za-z][A-Za-z0-9_]*", str(key)):
            raise InvalidInput(f"Invalid parameter name: {key}", details={"actionType": action_type})
        merged[str(key)] = str(value)
    return merged


def _load_chain_config(chain: str) -> dict[str, Any]:
    path = CHAIN_CONFIG_DIR / f"{chain}.json"
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except Exception as exc:
        raise ConfigError(f"Invalid JSON in chain config '{path}': {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Chain config '{path}' must be a JSON object.")
    return data


def chain_rpc_url(chain: str) -> str | None:
    explicit = (os.environ.get(f"CADENCE_{chain.upper()}_RPC_URL") or "").strip()
    if explicit:
        return explicit
    rpc = _load_chain_config(chain).get("rpc")
    if not isinstance(rpc, dict):
        return None
    for candidate in [rpc.get("primary"), rpc.get("fallback")]:
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return None
