import os
import pathlib
import sys
import tempfile
import textwrap
import time
import unittest
from unittest import mock

RUNTIME_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(RUNTIME_ROOT) not in sys.path:
    sys.path.insert(0, str(RUNTIME_ROOT))

from cadence_agent import supervisor as supervisor_mod  # noqa: E402
from cadence_agent.errors import AlreadyRunning, InvalidInput, NoCredential, SpawnFailure, VaultLocked  # noqa: E402
from cadence_agent.events import EventSink  # noqa: E402
from cadence_agent.vault import CredentialVault  # noqa: E402

FAST_KDF = {"timeCost": 1, "memoryCost": 8, "parallelism": 1, "hashLen": 32}

FAKE_WORKER = textwrap.dedent(
    """
    import json, os, signal, sys, time

    mode = sys.argv[1]
    params = json.loads(os.environ.get("CADENCE_WORKER_PARAMS", "{}"))
    secret = os.environ.get("CADENCE_WORKER_SECRET", "")
    print(json.dumps({"event": "attempt", "classification": "success", "nextTarget": params.get("endCity"),
                      "delaySec": 60, "secretLength": len(secret),
                      "masterVisible": "CADENCE_MASTER_PASSPHRASE" in os.environ}), flush=True)
    print("warning: slow rpc", file=sys.stderr, flush=True)
    if mode == "exit":
        sys.exit(0)
    if mode == "spam":
        for i in range(250):
            print("line %d" % i, flush=True)
        sys.exit(0)
    signal.signal(signal.SIGTERM, lambda *_: sys.exit(0))
    while True:
        time.sleep(0.1)
    """
)


def wait_until(predicate, timeout: float = 10.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return predicate()


class SupervisorTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        root = pathlib.Path(self._tmp.name)
        self.script = root / "fake_worker.py"
        self.script.write_text(FAKE_WORKER, encoding="utf-8")
        self.vault = CredentialVault(root / "vault", kdf_params=FAST_KDF)
        self.vault.setup("master-pass")
        self.vault.put_credential("wallet1", "keystore-secret-1")
        self.sink = EventSink()
        self.mode = "sleep"
        self.supervisor = supervisor_mod.Supervisor(
            self.vault,
            self.sink,
            chains=["pls", "bnb"],
            action_types=["crime", "travel"],
            command_factory=lambda action_type, chain, identity: [sys.executable, str(self.script), self.mode],
            stop_grace_sec=3,
        )

    def tearDown(self) -> None:
        self.supervisor.shutdown()
        self._tmp.cleanup()

    def test_one_worker_per_key(self) -> None:
        result = self.supervisor.start("crime", "pls", "wallet1")
        self.assertEqual(result["credentialTier"], "identity")
        self.assertEqual(result["cooldownMinutes"], 16)
        self.assertTrue(self.supervisor.is_running("crime", "pls", "wallet1"))

        with self.assertRaises(AlreadyRunning):
            self.supervisor.start("crime", "pls", "wallet1")

        # Different chain and action type are independent keys.
        self.supervisor.start("crime", "bnb", "wallet1")
        self.supervisor.start("travel", "pls", "wallet1")
        self.assertEqual(self.supervisor.status("crime")["chains"], {"pls": ["wallet1"], "bnb": ["wallet1"]})

    def test_stop_is_idempotent(self) -> None:
        self.supervisor.start("crime", "pls", "wallet1")
        first = self.supervisor.stop("crime", "pls", "wallet1")
        self.assertTrue(first["ok"])
        self.assertEqual(len(first["stopped"]), 1)
        self.assertFalse(self.supervisor.is_running("crime", "pls", "wallet1"))
        self.assertFalse(self.supervisor.status("crime", "pls", "wallet1")["running"])

        second = self.supervisor.stop("crime", "pls", "wallet1")
        self.assertFalse(second["ok"])
        self.assertEqual(second["code"], "not_running")

        # The key is free again.
        self.supervisor.start("crime", "pls", "wallet1")

    def test_stop_by_chain_scope(self) -> None:
        self.vault.put_credential("wallet2", "keystore-secret-2")
        self.supervisor.start("crime", "pls", "wallet1")
        self.supervisor.start("crime", "pls", "wallet2")
        self.supervisor.start("crime", "bnb", "wallet1")
        result = self.supervisor.stop("crime", "pls")
        self.assertEqual(sorted(item["identity"] for item in result["stopped"]), ["wallet1", "wallet2"])
        self.assertTrue(self.supervisor.is_running("crime", "bnb", "wallet1"))

    def test_secret_goes_through_environment(self) -> None:
        self.supervisor.start("travel", "pls", "wallet1", {"startCity": "2", "endCity": "5"})
        handle = self.supervisor._workers[("travel", "pls", "wallet1")]
        self.assertNotIn("keystore-secret-1", " ".join(handle.proc.args))
        self.assertTrue(wait_until(lambda: handle.last_classification == "success"))
        attempt = [e for e in self.supervisor.logs("travel", "pls", "wallet1") if e["classification"] == "success"]
        self.assertIn('"secretLength": 17', attempt[0]["text"])
        self.assertEqual(handle.target, "5")
        for event in self.sink.recent():
            self.assertNotIn("keystore-secret-1", event["text"])

    def test_child_env_carries_only_the_worker_secret(self) -> None:
        leaked = {"CADENCE_MASTER_PASSPHRASE": "master-pass", "CADENCE_NEW_PASSPHRASE": "next", "CADENCE_IMPORT_SECRET": "imp"}
        with mock.patch.dict(os.environ, leaked):
            env = self.supervisor._child_env("keystore-secret-1", {"crimeType": "1"})
        for name in leaked:
            self.assertNotIn(name, env)
        self.assertEqual(env[supervisor_mod.WORKER_SECRET_ENV], "keystore-secret-1")
        self.assertEqual(env[supervisor_mod.WORKER_PARAMS_ENV], '{"crimeType":"1"}')

    def test_worker_process_never_sees_master_passphrase(self) -> None:
        with mock.patch.dict(os.environ, {"CADENCE_MASTER_PASSPHRASE": "master-pass"}):
            self.supervisor.start("crime", "pls", "wallet1")
        handle = self.supervisor._workers[("crime", "pls", "wallet1")]
        self.assertTrue(wait_until(lambda: handle.last_classification == "success"))
        attempt = [e for e in self.supervisor.logs("crime", "pls", "wallet1") if e["classification"] == "success"]
        self.assertIn('"masterVisible": false', attempt[0]["text"])

    def test_vault_default_tier(self) -> None:
        result = self.supervisor.start("crime", "pls", "wallet7")
        self.assertEqual(result["credentialTier"], "vault_default")

    def test_locked_vault_blocks_start_not_inspection(self) -> None:
        self.supervisor.start("crime", "pls", "wallet1")
        self.vault.lock()
        with self.assertRaises(VaultLocked):
            self.supervisor.start("crime", "bnb", "wallet1")
        self.assertTrue(self.supervisor.status("crime", "pls", "wallet1")["running"])
        self.assertIsInstance(self.supervisor.logs("crime"), list)

    def test_no_credential(self) -> None:
        with mock.patch.object(self.vault, "resolve_credential", return_value=(None, None)):
            with self.assertRaises(NoCredential):
                self.supervisor.start("crime", "pls", "wallet1")
        self.assertFalse(self.supervisor.is_running("crime", "pls", "wallet1"))

    def test_invalid_input(self) -> None:
        with self.assertRaises(InvalidInput):
            self.supervisor.start("heist", "pls", "wallet1")
        with self.assertRaises(InvalidInput):
            self.supervisor.start("crime", "eth", "wallet1")
        with self.assertRaises(InvalidInput):
            self.supervisor.start("travel", "pls", "wallet1", {"startCity": "1", "endCity": "1"})

    def test_spawn_failure_leaves_key_free(self) -> None:
        self.supervisor.command_factory = lambda *_: [str(pathlib.Path(self._tmp.name) / "missing-binary")]
        with self.assertRaises(SpawnFailure):
            self.supervisor.start("crime", "pls", "wallet1")
        self.assertFalse(self.supervisor.is_running("crime", "pls", "wallet1"))
        self.assertNotIn(("crime", "pls", "wallet1"), self.supervisor._workers)

    def test_exit_deregisters_key(self) -> None:
        self.mode = "exit"
        self.supervisor.start("crime", "pls", "wallet1")
        self.assertTrue(wait_until(lambda: ("crime", "pls", "wallet1") not in self.supervisor._workers))
        self.assertTrue(wait_until(lambda: any("exited with code 0" in e["text"] for e in self.supervisor.logs("crime", "pls", "wallet1"))))
        texts = [e["text"] for e in self.supervisor.logs("crime", "pls", "wallet1")]
        self.assertIn("warning: slow rpc", texts)
        counters = self.supervisor.counters()
        self.assertGreaterEqual(counters["success"], 1)
        self.assertGreaterEqual(counters["warning"], 1)

    def test_logs_are_bounded(self) -> None:
        self.mode = "spam"
        self.supervisor.start("crime", "pls", "wallet1")
        self.assertTrue(wait_until(lambda: any("exited" in e["text"] for e in self.supervisor.logs("crime", "pls", "wallet1"))))
        entries = self.supervisor.logs("crime", "pls", "wallet1")
        self.assertEqual(len(entries), 100)
        self.assertIn("line 249", [e["text"] for e in entries])

    def test_combined_logs_are_time_sorted(self) -> None:
        self.mode = "exit"
        self.supervisor.start("crime", "pls", "wallet1")
        self.supervisor.start("crime", "bnb", "wallet1")
        self.assertTrue(wait_until(lambda: not self.supervisor._workers))
        combined = self.supervisor.logs("crime")
        self.assertEqual({e["chain"] for e in combined}, {"pls", "bnb"})
        self.assertEqual([e["time"] for e in combined], sorted(e["time"] for e in combined))

    def test_shutdown_stops_everything(self) -> None:
        self.supervisor.start("crime", "pls", "wallet1")
        self.supervisor.start("travel", "bnb", "wallet1")
        self.assertEqual(self.supervisor.shutdown(), 2)
        self.assertFalse(self.supervisor.is_running("crime", "pls", "wallet1"))
        self.assertFalse(self.supervisor.is_running("travel", "bnb", "wallet1"))
        self.assertEqual(set(self.supervisor.all_status()), {"crime", "travel"})
        self.assertFalse(self.supervisor.all_status()["crime"]["running"])


if __name__ == "__main__":
    unittest.main()
