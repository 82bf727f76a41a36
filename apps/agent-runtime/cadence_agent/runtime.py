"""Control surface: the operations an operator front end calls.

Every method returns the CLI payload shape, `{"ok": true, "code": "ok",
"message": ...}` on success or the error's `to_payload()` on failure, so
callers never see vault or supervisor exceptions.
"""

from __future__ import annotations

import logging
import pathlib
from typing import Any, Callable

from cadence_agent import config
from cadence_agent.agent import ChainAgent
from cadence_agent.errors import CadenceError, InvalidInput
from cadence_agent.events import EventSink
from cadence_agent.registry import IdentityRegistry
from cadence_agent.supervisor import Supervisor
from cadence_agent.vault import CredentialVault

logger = logging.getLogger(__name__)


def _ok(message: str, **extra: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {"ok": True, "code": "ok", "message": message}
    payload.update(extra)
    return payload


def _guard(fn: Callable[[], dict[str, Any]]) -> dict[str, Any]:
    try:
        return fn()
    except CadenceError as exc:
        logger.info("Request failed (%s): %s", exc.code, exc)
        return exc.to_payload()


class AgentRuntime:
    def __init__(
        self,
        *,
        home: pathlib.Path | None = None,
        vault: CredentialVault | None = None,
        sink: EventSink | None = None,
        supervisor: Supervisor | None = None,
        registry: IdentityRegistry | None = None,
        chain_agent: ChainAgent | None = None,
    ):
        self.home = home or config.app_dir()
        self.vault = vault or CredentialVault(self.home / "vault")
        self.sink = sink or EventSink(self.home / "events.jsonl")
        self.supervisor = supervisor or Supervisor(self.vault, self.sink)
        self.registry = registry or IdentityRegistry(
            self.vault,
            self.supervisor,
            self.sink,
            local_dir=self.home / "keystores",
            chain_agent=chain_agent,
        )

    # -- workers -----------------------------------------------------------

    def start(self, action_type: str, chain: str, identity: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        def run() -> dict[str, Any]:
            result = self.supervisor.start(action_type, chain, identity, params)
            return _ok(f"{action_type} worker started for {identity} on {chain}.", **result)

        return _guard(run)

    def stop(self, action_type: str, chain: str | None = None, identity: str | None = None) -> dict[str, Any]:
        return _guard(lambda: self.supervisor.stop(action_type, chain, identity))

    def status(self, action_type: str | None = None, chain: str | None = None, identity: str | None = None) -> dict[str, Any]:
        if action_type is None:
            return _ok("Status across all action types.", actions=self.supervisor.all_status(), counters=self.supervisor.counters())
        return _guard(lambda: _ok(f"{action_type} status.", **self.supervisor.status(action_type, chain, identity)))

    def logs(
        self, action_type: str, chain: str | None = None, identity: str | None = None, limit: int | None = None
    ) -> dict[str, Any]:
        def run() -> dict[str, Any]:
            entries = self.supervisor.logs(action_type, chain, identity, limit=limit)
            return _ok(f"{len(entries)} log line(s).", actionType=action_type, chain=chain, identity=identity, logs=entries)

        return _guard(run)

    def events(self, limit: int | None = 100, identity: str | None = None) -> dict[str, Any]:
        return _ok("Recent events.", events=self.sink.recent(limit, identity=identity))

    def actions(self) -> dict[str, Any]:
        catalogue = []
        for name in self.supervisor.action_types:
            spec = config.action_spec(name)
            catalogue.append(
                {
                    "actionType": name,
                    "cooldownMinutes": spec["cooldownMinutes"],
                    "alternating": spec["alternating"],
                    "requiresAuthorization": spec["requiresAuthorization"],
                    "defaults": dict(spec.get("defaults", {})),
                    "modeCooldownMinutes": dict(spec.get("modeCooldownMinutes", {})),
                }
            )
        return _ok("Action catalogue.", chains=list(self.supervisor.chains), actions=catalogue)

    # -- vault -------------------------------------------------------------

    def vault_unlock(self, passphrase: str) -> dict[str, Any]:
        def run() -> dict[str, Any]:
            result = self.vault.unlock(passphrase)
            # Deferred identities start now rather than on the next periodic pass.
            sync = self.registry.reconcile()
            message = "Vault created and unlocked." if result["isNewSetup"] else "Vault unlocked."
            return _ok(message, **result, reconcile=sync)

        return _guard(run)

    def vault_lock(self) -> dict[str, Any]:
        return _guard(lambda: _ok("Vault locked.", **self.vault.lock()))

    def vault_put_credential(self, identity: str, secret: str) -> dict[str, Any]:
        return _guard(lambda: _ok("Credential stored.", **self.vault.put_credential(identity, secret)))

    def vault_remove_credential(self, identity: str) -> dict[str, Any]:
        return _guard(lambda: _ok("Credential removal processed.", **self.vault.remove_credential(identity)))

    def vault_change_passphrase(self, old_passphrase: str, new_passphrase: str) -> dict[str, Any]:
        return _guard(lambda: _ok("Master passphrase changed.", **self.vault.change_passphrase(old_passphrase, new_passphrase)))

    def vault_status(self) -> dict[str, Any]:
        return _ok("Vault status.", **self.vault.status())

    # -- registry ----------------------------------------------------------

    def reconcile(self) -> dict[str, Any]:
        return _guard(lambda: _ok("Identities reconciled.", **self.registry.reconcile()))

    def identities(self) -> dict[str, Any]:
        return _ok("Known identities.", identities=self.registry.identities(), deferred=self.registry.deferred())

    def resolve_address(self, identity: str, chain: str) -> dict[str, Any]:
        def run() -> dict[str, Any]:
            config.require_chain(chain, self.supervisor.chains)
            secret = None
            if self.vault.is_unlocked:
                secret, _ = self.vault.resolve_credential(identity)
            address = self.registry.resolve_address(identity, chain, secret)
            return _ok("Address resolved." if address else "Address unknown.", identity=identity, chain=chain, address=address)

        return _guard(run)

    # -- lifecycle ---------------------------------------------------------

    def start_background(self) -> dict[str, Any]:
        return _guard(lambda: _ok("Identity sync started.", **self.registry.start()))

    def shutdown(self) -> dict[str, Any]:
        self.registry.stop()
        stopped = self.supervisor.shutdown()
        return _ok("Runtime shut down.", stopped=stopped)

    # -- request dispatch --------------------------------------------------

    def dispatch(self, request: dict[str, Any]) -> dict[str, Any]:
        """Route one `{"op": ..., ...}` request to the matching operation."""
        op = request.get("op")
        handlers: dict[str, Callable[[], dict[str, Any]]] = {
            "start": lambda: self.start(request["actionType"], request["chain"], request["identity"], request.get("params")),
            "stop": lambda: self.stop(request["actionType"], request.get("chain"), request.get("identity")),
            "status": lambda: self.status(request.get("actionType"), request.get("chain"), request.get("identity")),
            "logs": lambda: self.logs(request["actionType"], request.get("chain"), request.get("identity"), request.get("limit")),
            "events": lambda: self.events(request.get("limit", 100), request.get("identity")),
            "actions": self.actions,
            "vault_unlock": lambda: self.vault_unlock(request["passphrase"]),
            "vault_lock": self.vault_lock,
            "vault_put_credential": lambda: self.vault_put_credential(request["identity"], request["secret"]),
            "vault_remove_credential": lambda: self.vault_remove_credential(request["identity"]),
            "vault_status": self.vault_status,
            "reconcile": self.reconcile,
            "identities": self.identities,
            "address": lambda: self.resolve_address(request["identity"], request["chain"]),
        }
        handler = handlers.get(str(op))
        if handler is None:
            return InvalidInput(f"Unknown op: {op}", action_hint=f"Use one of: {', '.join(handlers)}").to_payload()
        try:
            return handler()
        except KeyError as exc:
            return InvalidInput(f"Request for op '{op}' is missing field {exc}.", details={"op": op}).to_payload()
