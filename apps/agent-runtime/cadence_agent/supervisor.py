"""Worker supervisor: one OS process per (action-type, chain, identity) key.

The supervisor resolves the identity's secret from the vault before spawning
and hands it to the worker through a private copy of the environment. Worker
output is captured line by line into a per-key ring buffer and the event sink.
"""

from __future__ import annotations

import collections
import json
import logging
import os
import pathlib
import signal
import subprocess
import sys
import threading
import time
from typing import Any, Callable

from cadence_agent import agent, config
from cadence_agent.engine import RetryEngine
from cadence_agent.errors import AlreadyRunning, NoCredential, SpawnFailure
from cadence_agent.events import LEVELS, EventSink, classify_line, utc_now
from cadence_agent.vault import CredentialVault, validate_identity_name
from cadence_agent.worker import WORKER_PARAMS_ENV, WORKER_SECRET_ENV

logger = logging.getLogger(__name__)

RUNTIME_ROOT = pathlib.Path(__file__).resolve().parents[1]
DEFAULT_STOP_GRACE_SEC = 5.0

LEVEL_BY_CLASSIFICATION = {
    agent.SUCCESS: "success",
    agent.ALREADY_AT_TARGET: "info",
    agent.ON_COOLDOWN: "warning",
    agent.TEMPORARILY_RESTRICTED: "warning",
    agent.INACTIVE_ON_CHAIN: "warning",
    agent.INSUFFICIENT_AUTHORIZATION: "warning",
    agent.TRANSIENT_NETWORK_ERROR: "error",
    agent.UNCLASSIFIED: "error",
}

WorkerKey = tuple[str, str, str]
CommandFactory = Callable[[str, str, str], list[str]]


def worker_command(action_type: str, chain: str, identity: str) -> list[str]:
    return [
        sys.executable,
        "-m",
        "cadence_agent.cli",
        "worker",
        "run",
        "--type",
        action_type,
        "--chain",
        chain,
        "--identity",
        identity,
        "--json",
    ]


class WorkerProcess:
    def __init__(self, key: WorkerKey, proc: subprocess.Popen, cooldown_minutes: int, credential_tier: str):
        self.key = key
        self.proc = proc
        self.cooldown_minutes = cooldown_minutes
        self.credential_tier = credential_tier
        self.started_at = utc_now()
        self.target: str | None = None
        self.last_classification: str | None = None
        self.next_retry_at: float | None = None
        self.readers: list[threading.Thread] = []

    @property
    def pid(self) -> int:
        return self.proc.pid

    def alive(self) -> bool:
        return self.proc.poll() is None

    def describe(self) -> dict[str, Any]:
        action_type, chain, identity = self.key
        return {
            "actionType": action_type,
            "chain": chain,
            "identity": identity,
            "running": self.alive(),
            "pid": self.pid,
            "startedAt": self.started_at,
            "cooldownMinutes": self.cooldown_minutes,
            "credentialTier": self.credential_tier,
            "target": self.target,
            "lastClassification": self.last_classification,
            "nextRetryAt": self.next_retry_at,
        }


class Supervisor:
    def __init__(
        self,
        vault: CredentialVault,
        sink: EventSink,
        *,
        chains: list[str] | None = None,
        action_types: list[str] | None = None,
        command_factory: CommandFactory = worker_command,
        stop_grace_sec: float = DEFAULT_STOP_GRACE_SEC,
    ):
        self.vault = vault
        self.sink = sink
        self.chains = chains if chains is not None else config.configured_chains()
        self.action_types = action_types if action_types is not None else config.configured_action_types()
        self.command_factory = command_factory
        self.stop_grace_sec = stop_grace_sec
        self._workers: dict[WorkerKey, WorkerProcess] = {}
        self._logs: dict[WorkerKey, collections.deque[dict[str, Any]]] = {}
        self._counters = {level: 0 for level in LEVELS}
        self._mutex = threading.RLock()

    # -- lifecycle ---------------------------------------------------------

    def _child_env(self, secret: str, params: dict[str, str]) -> dict[str, str]:
        env = config.child_env()
        env[WORKER_SECRET_ENV] = secret
        env[WORKER_PARAMS_ENV] = json.dumps(params, separators=(",", ":"))
        python_path = env.get("PYTHONPATH")
        env["PYTHONPATH"] = str(RUNTIME_ROOT) + (os.pathsep + python_path if python_path else "")
        return env

    def start(self, action_type: str, chain: str, identity: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        spec = config.action_spec(action_type)
        config.require_chain(chain, self.chains)
        identity = validate_identity_name(identity)
        merged = RetryEngine(action_type, params).params
        key = (action_type, chain, identity)

        with self._mutex:
            existing = self._workers.get(key)
            if existing is not None and existing.alive():
                raise AlreadyRunning(
                    f"{action_type} worker already running for {identity} on {chain}.",
                    details={"actionType": action_type, "chain": chain, "identity": identity, "pid": existing.pid},
                )
            secret, tier = self.vault.resolve_credential(identity)
            if not secret:
                raise NoCredential(f"No credential available for {identity}.", details={"identity": identity})

            cmd = self.command_factory(action_type, chain, identity)
            try:
                proc = subprocess.Popen(
                    cmd,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                    bufsize=1,
                    env=self._child_env(secret, merged),
                    start_new_session=True,
                )
            except OSError as exc:
                raise SpawnFailure(
                    f"Unable to start {action_type} worker: {exc}",
                    details={"actionType": action_type, "chain": chain, "identity": identity},
                ) from exc

            handle = WorkerProcess(key, proc, spec["cooldownMinutes"], tier)
            self._workers[key] = handle
            self._logs[key] = collections.deque(maxlen=config.WORKER_LOG_LIMIT)
            for name, stream in (("stdout", proc.stdout), ("stderr", proc.stderr)):
                reader = threading.Thread(target=self._pump, args=(handle, name, stream), daemon=True)
                reader.start()
                handle.readers.append(reader)
            threading.Thread(target=self._wait_exit, args=(handle,), daemon=True).start()

        logger.info("Started %s worker for %s on %s (pid %s, %s credential)", action_type, identity, chain, proc.pid, tier)
        self._record(handle, "system", f"worker started (pid {proc.pid})", level="info")
        return {
            "actionType": action_type,
            "chain": chain,
            "identity": identity,
            "pid": proc.pid,
            "cooldownMinutes": spec["cooldownMinutes"],
            "credentialTier": tier,
        }

    def _pump(self, handle: WorkerProcess, stream_name: str, stream) -> None:
        for raw in iter(stream.readline, ""):
            line = raw.rstrip("\n")
            if line.strip():
                self._record(handle, stream_name, line)
        stream.close()

    def _wait_exit(self, handle: WorkerProcess) -> None:
        returncode = handle.proc.wait()
        for reader in handle.readers:
            reader.join(timeout=5)
        self._deregister(handle)
        level = "info" if returncode in (0, -signal.SIGTERM, -signal.SIGKILL) else "error"
        self._record(handle, "system", f"worker exited with code {returncode}", level=level)

    def _deregister(self, handle: WorkerProcess) -> bool:
        with self._mutex:
            if self._workers.get(handle.key) is handle:
                del self._workers[handle.key]
                return True
        return False

    def _record(self, handle: WorkerProcess, stream: str, line: str, *, level: str | None = None) -> None:
        payload: dict[str, Any] | None = None
        if line.startswith("{"):
            try:
                decoded = json.loads(line)
            except ValueError:
                decoded = None
            if isinstance(decoded, dict):
                payload = decoded
        classification = payload.get("classification") if payload else None
        if level is None:
            level = LEVEL_BY_CLASSIFICATION.get(classification or "", None) or classify_line(line)

        action_type, chain, identity = handle.key
        entry = {"time": utc_now(), "stream": stream, "level": level, "classification": classification, "text": line}
        with self._mutex:
            buffer = self._logs.get(handle.key)
            if buffer is not None:
                buffer.append(entry)
            self._counters[level] = self._counters.get(level, 0) + 1
            if payload:
                self._track(handle, payload)
        self.sink.emit(
            line,
            action_type=action_type,
            chain=chain,
            identity=identity,
            stream=stream,
            level=level,
            classification=classification,
        )

    def _track(self, handle: WorkerProcess, payload: dict[str, Any]) -> None:
        if "nextTarget" in payload:
            handle.target = payload["nextTarget"]
        elif "target" in payload:
            handle.target = payload["target"]
        if payload.get("classification"):
            handle.last_classification = payload["classification"]
        if isinstance(payload.get("delaySec"), (int, float)):
            handle.next_retry_at = time.time() + float(payload["delaySec"])

    def _terminate(self, handle: WorkerProcess) -> None:
        proc = handle.proc
        if proc.poll() is None:
            try:
                os.killpg(proc.pid, signal.SIGTERM)
            except ProcessLookupError:
                pass
            try:
                proc.wait(timeout=self.stop_grace_sec)
            except subprocess.TimeoutExpired:
                logger.warning("Worker pid %s ignored SIGTERM; killing", proc.pid)
                try:
                    os.killpg(proc.pid, signal.SIGKILL)
                except ProcessLookupError:
                    pass
                proc.wait()
        self._deregister(handle)

    def _matching(self, action_type: str, chain: str | None, identity: str | None) -> list[WorkerProcess]:
        with self._mutex:
            return [
                handle
                for (a, c, i), handle in self._workers.items()
                if a == action_type and (chain is None or c == chain) and (identity is None or i == identity)
            ]

    def stop(self, action_type: str, chain: str | None = None, identity: str | None = None) -> dict[str, Any]:
        matched = self._matching(action_type, chain, identity)
        if not matched:
            return {
                "ok": False,
                "code": "not_running",
                "message": f"No {action_type} worker running for the requested scope.",
                "stopped": [],
            }
        stopped = []
        for handle in matched:
            self._terminate(handle)
            _, c, i = handle.key
            stopped.append({"chain": c, "identity": i, "pid": handle.pid})
            logger.info("Stopped %s worker for %s on %s", action_type, i, c)
        return {"ok": True, "code": "ok", "message": f"Stopped {len(stopped)} {action_type} worker(s).", "stopped": stopped}

    def shutdown(self) -> int:
        with self._mutex:
            handles = list(self._workers.values())
        for handle in handles:
            self._terminate(handle)
        if handles:
            logger.info("Supervisor shut down %d worker(s)", len(handles))
        return len(handles)

    # -- inspection --------------------------------------------------------

    def is_running(self, action_type: str, chain: str, identity: str) -> bool:
        with self._mutex:
            handle = self._workers.get((action_type, chain, identity))
        return handle is not None and handle.alive()

    def status(self, action_type: str, chain: str | None = None, identity: str | None = None) -> dict[str, Any]:
        config.action_spec(action_type)
        if chain is not None and identity is not None:
            with self._mutex:
                handle = self._workers.get((action_type, chain, identity))
            if handle is None:
                return {"actionType": action_type, "chain": chain, "identity": identity, "running": False}
            return handle.describe()

        chains: dict[str, list[str]] = {c: [] for c in ([chain] if chain else self.chains)}
        for handle in self._matching(action_type, chain, identity):
            if handle.alive():
                chains.setdefault(handle.key[1], []).append(handle.key[2])
        for names in chains.values():
            names.sort()
        return {
            "actionType": action_type,
            "running": any(chains.values()),
            "chains": chains,
            "cooldownMinutes": config.action_spec(action_type)["cooldownMinutes"],
        }

    def all_status(self) -> dict[str, Any]:
        return {action_type: self.status(action_type) for action_type in self.action_types}

    def logs(
        self, action_type: str, chain: str | None = None, identity: str | None = None, *, limit: int | None = None
    ) -> list[dict[str, Any]]:
        config.action_spec(action_type)
        with self._mutex:
            if chain is not None and identity is not None:
                items = list(self._logs.get((action_type, chain, identity), ()))
            else:
                items = []
                for (a, c, i), buffer in self._logs.items():
                    if a != action_type or (chain is not None and c != chain) or (identity is not None and i != identity):
                        continue
                    items.extend(dict(entry, chain=c, identity=i) for entry in buffer)
                items.sort(key=lambda entry: entry["time"])
        if limit is not None:
            items = items[-limit:]
        return items

    def counters(self) -> dict[str, int]:
        with self._mutex:
            return dict(self._counters)
