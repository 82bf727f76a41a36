import io
import json
import os
import pathlib
import random
import sys
import tempfile
import threading
import unittest
from unittest import mock

RUNTIME_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(RUNTIME_ROOT) not in sys.path:
    sys.path.insert(0, str(RUNTIME_ROOT))

from cadence_agent import agent, worker  # noqa: E402
from cadence_agent.errors import SpawnFailure  # noqa: E402
from cadence_agent.locks import identity_lock  # noqa: E402


class RecordingEvent:
    """Stop event stand-in that never blocks and records requested delays."""

    def __init__(self, stop_after: int | None = None):
        self.waits: list[float] = []
        self.stop_after = stop_after
        self.stopped = False

    def set(self) -> None:
        self.stopped = True

    def wait(self, timeout: float | None = None) -> bool:
        self.waits.append(float(timeout or 0))
        return self.stopped or (self.stop_after is not None and len(self.waits) > self.stop_after)

    def is_set(self) -> bool:
        return self.stopped


class WorkerLoopTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self._env = mock.patch.dict(os.environ, {"CADENCE_AGENT_HOME": self._tmp.name})
        self._env.start()
        self.chain_agent = mock.Mock()
        self.out = io.StringIO()

    def tearDown(self) -> None:
        self._env.stop()
        self._tmp.cleanup()

    def _worker(self, action_type: str, params: dict | None = None, stop_event=None) -> worker.Worker:
        return worker.Worker(
            action_type,
            "pls",
            "wallet1",
            "s3cret",
            params=params,
            chain_agent=self.chain_agent,
            stop_event=stop_event or RecordingEvent(),
            rng=random.Random(3),
            lock_timeout_sec=0.3,
            out=self.out,
        )

    def _lines(self) -> list[dict]:
        return [json.loads(line) for line in self.out.getvalue().splitlines() if line.strip()]

    def test_travel_aligns_once_then_alternates(self) -> None:
        self.chain_agent.position.return_value = "0"
        self.chain_agent.run_action.side_effect = [
            agent.outcome(agent.SUCCESS, "arrived"),
            agent.outcome(agent.ALREADY_AT_TARGET, "already at city"),
        ]
        w = self._worker("travel", {"startCity": "0", "endCity": "1", "travelType": "2"})

        first = w.run_once()
        second = w.run_once()

        self.chain_agent.position.assert_called_once_with("pls", "wallet1", "s3cret")
        self.assertEqual(first["target"], "1")
        self.assertEqual(first["nextTarget"], "0")
        self.assertEqual(first["delaySec"], 65 * 60)
        self.assertEqual(second["target"], "0")
        self.assertEqual(second["nextTarget"], "1")
        self.assertEqual(second["delaySec"], 30)
        targets = [c.kwargs["target"] for c in self.chain_agent.run_action.call_args_list]
        self.assertEqual(targets, ["1", "0"])
        events = [line["event"] for line in self._lines()]
        self.assertEqual(events, ["aligned", "attempt", "attempt"])

    def test_authorization_precheck_runs_once(self) -> None:
        self.chain_agent.check_authorization.return_value = agent.outcome(agent.INSUFFICIENT_AUTHORIZATION, "below")
        self.chain_agent.grant_authorization.return_value = agent.outcome(agent.SUCCESS, "granted")
        self.chain_agent.run_action.return_value = agent.outcome(agent.SUCCESS, "trained")
        w = self._worker("killskill")

        w.run_once()
        w.run_once()

        self.assertEqual(self.chain_agent.check_authorization.call_count, 1)
        self.assertEqual(self.chain_agent.grant_authorization.call_count, 1)
        self.assertEqual(self.chain_agent.run_action.call_count, 2)

    def test_authorization_reset_rechecks(self) -> None:
        self.chain_agent.check_authorization.return_value = agent.outcome(agent.SUCCESS, "ok")
        self.chain_agent.run_action.side_effect = [
            agent.outcome(agent.INSUFFICIENT_AUTHORIZATION, "allowance"),
            agent.outcome(agent.SUCCESS, "trained"),
        ]
        w = self._worker("killskill")

        decision = w.run_once()
        self.assertEqual(decision["delaySec"], 6 * 3600)
        w.run_once()

        self.assertEqual(self.chain_agent.check_authorization.call_count, 2)
        self.chain_agent.grant_authorization.assert_not_called()

    def test_failed_precheck_skips_action(self) -> None:
        self.chain_agent.check_authorization.return_value = agent.outcome(agent.TRANSIENT_NETWORK_ERROR, "timeout")
        w = self._worker("killskill")
        decision = w.run_once()
        self.assertEqual(decision["classification"], agent.TRANSIENT_NETWORK_ERROR)
        self.assertEqual(decision["delaySec"], 15 * 60)
        self.chain_agent.run_action.assert_not_called()

    def test_lock_timeout_is_transient(self) -> None:
        w = self._worker("crime")
        with identity_lock("wallet1", "pls", timeout_sec=1):
            decision = w.run_once()
        self.assertEqual(decision["classification"], agent.TRANSIENT_NETWORK_ERROR)
        self.chain_agent.run_action.assert_not_called()
        self.assertEqual(self._lines()[-1]["code"], "lock_timeout")

    def test_run_loop_uses_engine_delays(self) -> None:
        self.chain_agent.run_action.side_effect = [
            agent.outcome(agent.TEMPORARILY_RESTRICTED, "jailed"),
            agent.outcome(agent.SUCCESS, "done"),
        ]
        stop = RecordingEvent()
        w = self._worker("crime", stop_event=stop)
        self.assertEqual(w.run(max_attempts=2), 0)
        self.assertEqual(len(stop.waits), 2)
        self.assertGreaterEqual(stop.waits[0], 5)
        self.assertLessEqual(stop.waits[0], 60)
        self.assertEqual(stop.waits[1], 5 * 60)
        events = [line["event"] for line in self._lines()]
        self.assertEqual(events, ["started", "attempt", "attempt", "stopped"])

    def test_stop_before_first_attempt(self) -> None:
        stop = threading.Event()
        stop.set()
        w = self._worker("crime", stop_event=stop)
        self.assertEqual(w.run(), 0)
        self.chain_agent.run_action.assert_not_called()
        self.assertEqual(self._lines()[-1]["event"], "stopped")

    def test_stop_between_attempts(self) -> None:
        self.chain_agent.run_action.return_value = agent.outcome(agent.ON_COOLDOWN, "cooldown")
        w = self._worker("crime", stop_event=RecordingEvent(stop_after=1))
        w.run()
        self.assertEqual(self.chain_agent.run_action.call_count, 1)

    def test_stop_during_authorization_check_skips_action(self) -> None:
        stop = RecordingEvent()

        def check_then_stop(*args):
            stop.set()
            return agent.outcome(agent.SUCCESS, "ok")

        self.chain_agent.check_authorization.side_effect = check_then_stop
        w = self._worker("killskill", stop_event=stop)

        self.assertEqual(w.run(), 0)
        self.chain_agent.run_action.assert_not_called()
        self.assertEqual(w.attempts, 0)
        self.assertEqual([line["event"] for line in self._lines()], ["started", "authorization", "stopped"])

    def test_stop_during_alignment_skips_action(self) -> None:
        stop = RecordingEvent()

        def position_then_stop(*args):
            stop.set()
            return "0"

        self.chain_agent.position.side_effect = position_then_stop
        w = self._worker("travel", {"startCity": "0", "endCity": "1", "travelType": "2"}, stop_event=stop)

        self.assertIsNone(w.run_once())
        self.chain_agent.run_action.assert_not_called()

    def test_spawn_failure_ends_worker(self) -> None:
        self.chain_agent.run_action.side_effect = SpawnFailure("Missing dependency: cadence-chain-agent.")
        w = self._worker("crime")
        with self.assertRaises(SpawnFailure):
            w.run(max_attempts=3)

    def test_parse_params(self) -> None:
        self.assertEqual(worker.parse_params(""), {})
        self.assertEqual(worker.parse_params('{"crimeType": 2, "x": null}'), {"crimeType": "2"})
        with self.assertRaises(ValueError):
            worker.parse_params("[1]")


if __name__ == "__main__":
    unittest.main()
