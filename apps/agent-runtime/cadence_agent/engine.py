"""Cooldown-aware retry engine: picks the next target and delay for a worker.

Every classification maps to a continuation. Alternating actions shuttle
between two targets (A and B); other actions have a single implicit target,
represented as None.
"""

from __future__ import annotations

import random
from typing import Any

from cadence_agent import agent, config
from cadence_agent.errors import InvalidInput

ALREADY_AT_TARGET_DELAY_SEC = 30
RESTRICTED_DELAY_SEC = 5 * 60
INACTIVE_DELAY_SEC = 6 * 60 * 60
UNAUTHORIZED_DELAY_SEC = 6 * 60 * 60
TRANSIENT_DELAY_SEC = 15 * 60
INITIAL_JITTER_SEC = (5, 60)

FIXED_DELAYS_SEC = {
    agent.ALREADY_AT_TARGET: ALREADY_AT_TARGET_DELAY_SEC,
    agent.TEMPORARILY_RESTRICTED: RESTRICTED_DELAY_SEC,
    agent.INACTIVE_ON_CHAIN: INACTIVE_DELAY_SEC,
    agent.INSUFFICIENT_AUTHORIZATION: UNAUTHORIZED_DELAY_SEC,
    agent.TRANSIENT_NETWORK_ERROR: TRANSIENT_DELAY_SEC,
    agent.UNCLASSIFIED: TRANSIENT_DELAY_SEC,
}

FLIP_ON = (agent.SUCCESS, agent.ALREADY_AT_TARGET)


class RetryEngine:
    def __init__(self, action_type: str, params: dict[str, Any] | None = None, *, rng: random.Random | None = None):
        self.action_type = action_type
        self.spec = config.action_spec(action_type)
        self.params = config.action_params(action_type, params)
        self.alternating = bool(self.spec.get("alternating"))
        self._rng = rng or random.Random()

        self.targets: tuple[str, ...] = ()
        self.target: str | None = None
        if self.alternating:
            first_key, second_key = self.spec["targetParams"]
            self.targets = (self.params[first_key], self.params[second_key])
            if self.targets[0] == self.targets[1]:
                raise InvalidInput(
                    f"{first_key} and {second_key} must differ for {action_type}.",
                    details={"actionType": action_type, first_key: self.targets[0]},
                )
            self.target = self.targets[0]

        self.variance_sec = self._variance_sec()
        self.authorized = not self.spec.get("requiresAuthorization", False)
        self.aligned = not self.alternating
        self.last_classification: str | None = None

    def _variance_sec(self) -> int:
        raw = self.params.get("varianceMinutes", "0").strip()
        if not raw.isdigit():
            raise InvalidInput("varianceMinutes must be a non-negative integer.", details={"varianceMinutes": raw})
        return int(raw) * 60

    def base_cooldown_sec(self) -> int:
        minutes = self.spec["cooldownMinutes"]
        mode_param = self.spec.get("modeParam")
        if mode_param:
            minutes = self.spec.get("modeCooldownMinutes", {}).get(self.params.get(mode_param, ""), minutes)
        return int(minutes) * 60

    def initial_delay(self) -> float:
        low, high = INITIAL_JITTER_SEC
        return self._rng.uniform(low, high)

    def other_target(self, target: str | None) -> str | None:
        if not self.alternating:
            return None
        return self.targets[1] if target == self.targets[0] else self.targets[0]

    def align(self, position: str | None) -> str | None:
        """Pick the starting target from the identity's current position."""
        self.aligned = True
        if not self.alternating:
            return None
        if position == self.targets[0]:
            self.target = self.targets[1]
        else:
            self.target = self.targets[0]
        return self.target

    def mark_authorized(self) -> None:
        self.authorized = True

    def decide(self, result: dict[str, Any]) -> dict[str, Any]:
        classification = result.get("classification") or agent.UNCLASSIFIED
        if classification not in agent.CLASSIFICATIONS:
            classification = agent.UNCLASSIFIED

        if classification == agent.SUCCESS:
            delay = float(self.base_cooldown_sec())
            if self.variance_sec:
                delay = max(float(ALREADY_AT_TARGET_DELAY_SEC), delay + self._rng.uniform(-self.variance_sec, self.variance_sec))
        elif classification == agent.ON_COOLDOWN:
            delay = float(self.base_cooldown_sec())
        else:
            delay = float(FIXED_DELAYS_SEC[classification])

        reset_authorization = classification == agent.INSUFFICIENT_AUTHORIZATION
        if reset_authorization and self.spec.get("requiresAuthorization"):
            self.authorized = False

        current = self.target
        next_target = self.other_target(current) if classification in FLIP_ON else current
        self.target = next_target
        self.last_classification = classification
        return {
            "classification": classification,
            "target": current,
            "nextTarget": next_target,
            "delaySec": delay,
            "resetAuthorization": reset_authorization,
        }
