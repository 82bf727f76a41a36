"""One worker: the attempt loop for a single (action-type, chain, identity) key.

A worker runs in its own process, started by the supervisor. It reports each
step as one JSON line on stdout, e.g.

    {"event":"attempt","classification":"success","target":"0","nextTarget":"1","delaySec":3900.0,...}

and writes diagnostics through `logging` to stderr.
"""

from __future__ import annotations

import json
import logging
import random
import sys
import threading
from typing import Any, TextIO

from cadence_agent import agent
from cadence_agent.agent import ChainAgent
from cadence_agent.engine import RetryEngine
from cadence_agent.errors import LockTimeout, SubprocessTimeout
from cadence_agent.locks import identity_lock

logger = logging.getLogger(__name__)

WORKER_SECRET_ENV = "CADENCE_WORKER_SECRET"
WORKER_PARAMS_ENV = "CADENCE_WORKER_PARAMS"


def parse_params(raw: str | None) -> dict[str, str]:
    if not raw:
        return {}
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("worker params must be a JSON object")
    return {str(key): str(value) for key, value in data.items() if value is not None}


class Worker:
    def __init__(
        self,
        action_type: str,
        chain: str,
        identity: str,
        secret: str,
        *,
        params: dict[str, Any] | None = None,
        chain_agent: ChainAgent | None = None,
        stop_event: threading.Event | None = None,
        rng: random.Random | None = None,
        lock_timeout_sec: float | None = None,
        out: TextIO | None = None,
    ):
        self.action_type = action_type
        self.chain = chain
        self.identity = identity
        self._secret = secret
        self.engine = RetryEngine(action_type, params, rng=rng)
        self.chain_agent = chain_agent or ChainAgent()
        self.stop_event = stop_event or threading.Event()
        self.lock_timeout_sec = lock_timeout_sec
        self.out = out or sys.stdout
        self.attempts = 0

    def _emit(self, event: str, **fields: Any) -> None:
        payload = {"event": event, "actionType": self.action_type, "chain": self.chain, "identity": self.identity}
        payload.update(fields)
        self.out.write(json.dumps(payload, separators=(",", ":")) + "\n")
        self.out.flush()

    def _submit(self, call, *args: Any, **kwargs: Any) -> dict[str, Any]:
        try:
            with identity_lock(self.identity, self.chain, timeout_sec=self.lock_timeout_sec):
                return call(*args, **kwargs)
        except LockTimeout as exc:
            return agent.outcome(agent.TRANSIENT_NETWORK_ERROR, str(exc), code=exc.code)

    def _align(self) -> None:
        position = None
        try:
            position = self.chain_agent.position(self.chain, self.identity, self._secret)
        except SubprocessTimeout as exc:
            logger.warning("Position lookup for %s on %s failed: %s", self.identity, self.chain, exc)
        target = self.engine.align(position)
        self._emit("aligned", position=position, target=target)

    def _ensure_authorization(self) -> dict[str, Any] | None:
        """Run the one-time authorization pre-check; returns a failed outcome or None."""
        check = self.chain_agent.check_authorization(self.action_type, self.chain, self.identity, self._secret)
        if check["classification"] == agent.SUCCESS:
            self.engine.mark_authorized()
            self._emit("authorization", granted=False, valid=True)
            return None
        if check["classification"] != agent.INSUFFICIENT_AUTHORIZATION:
            return check

        logger.info("Granting %s authorization for %s on %s", self.action_type, self.identity, self.chain)
        grant = self._submit(
            self.chain_agent.grant_authorization, self.action_type, self.chain, self.identity, self._secret
        )
        if grant["classification"] == agent.SUCCESS:
            self.engine.mark_authorized()
            self._emit("authorization", granted=True, valid=True)
            return None
        return grant

    def _attempt(self) -> dict[str, Any]:
        return self._submit(
            self.chain_agent.run_action,
            self.action_type,
            self.chain,
            self.identity,
            self._secret,
            target=self.engine.target,
            params=self.engine.params,
        )

    def _report(self, result: dict[str, Any], decision: dict[str, Any]) -> None:
        classification = decision["classification"]
        message = agent.truncate(result.get("message") or "")
        if classification == agent.UNCLASSIFIED:
            logger.warning("Unclassified failure for %s/%s/%s: %s", self.action_type, self.chain, self.identity, message)
        self._emit(
            "attempt",
            attempt=self.attempts,
            classification=classification,
            code=result.get("code"),
            target=decision["target"],
            nextTarget=decision["nextTarget"],
            delaySec=decision["delaySec"],
            message=message,
        )

    def run_once(self) -> dict[str, Any] | None:
        """One attempt cycle; returns None without submitting once stop is set."""
        if not self.engine.aligned:
            self._align()
            if self.stop_event.is_set():
                return None
        result = None
        if not self.engine.authorized:
            result = self._ensure_authorization()
            if self.stop_event.is_set():
                return None
        if result is None:
            result = self._attempt()
        self.attempts += 1
        decision = self.engine.decide(result)
        self._report(result, decision)
        return decision

    def run(self, *, max_attempts: int | None = None) -> int:
        """Loop until stopped. SpawnFailure from the chain agent propagates."""
        delay = self.engine.initial_delay()
        self._emit("started", delaySec=delay, target=self.engine.target, cooldownSec=self.engine.base_cooldown_sec())
        while not self.stop_event.wait(delay):
            decision = self.run_once()
            if decision is None:
                break
            delay = decision["delaySec"]
            if max_attempts is not None and self.attempts >= max_attempts:
                break
        self._emit("stopped", attempts=self.attempts)
        return 0
