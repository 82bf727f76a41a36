#!/usr/bin/env python3
"""Cadence agent runtime CLI.

Every command prints single-line JSON results (`ok`/`fail`) on stdout; the
`worker run` command additionally streams one JSON line per worker step.
"""

from __future__ import annotations

import argparse
import atexit
import getpass
import json
import logging
import os
import signal
import sys
import threading
from typing import Any

from cadence_agent import config
from cadence_agent.errors import CadenceError, SpawnFailure
from cadence_agent.runtime import AgentRuntime
from cadence_agent.vault import CredentialVault
from cadence_agent.worker import WORKER_PARAMS_ENV, WORKER_SECRET_ENV, Worker, parse_params

logger = logging.getLogger("cadence_agent.cli")

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"


class PassphraseUnavailable(Exception):
    """Passphrase or secret input is unavailable in non-interactive mode."""


def emit(payload: dict) -> int:
    print(json.dumps(payload, separators=(",", ":")), flush=True)
    return 0


def ok(message: str, **extra: object) -> int:
    payload = {"ok": True, "code": "ok", "message": message}
    payload.update(extra)
    return emit(payload)


def fail(code: str, message: str, action_hint: str | None = None, details: dict | None = None, exit_code: int = 1) -> int:
    payload: dict[str, object] = {"ok": False, "code": code, "message": message}
    if action_hint:
        payload["actionHint"] = action_hint
    if details:
        payload["details"] = details
    emit(payload)
    return exit_code


def fail_from(exc: CadenceError, exit_code: int = 1) -> int:
    return fail(exc.code, str(exc), exc.action_hint, exc.details, exit_code=exit_code)


def require_json_flag(args: argparse.Namespace) -> int | None:
    if getattr(args, "json", False):
        return None
    return fail("missing_flag", "This command requires --json output mode.", "Re-run with --json.", exit_code=2)


def configure_logging() -> None:
    level = (os.environ.get("CADENCE_LOG_LEVEL") or "INFO").strip().upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )


def _interactive_required() -> bool:
    return sys.stdin.isatty() and sys.stderr.isatty()


def _env_or_prompt(env_name: str, prompt: str, purpose: str, *, confirm: bool = False) -> str:
    value = os.environ.get(env_name)
    if isinstance(value, str) and value.strip():
        return value
    if not _interactive_required():
        raise PassphraseUnavailable(f"{purpose} requires {env_name} in non-interactive mode.")
    first = getpass.getpass(prompt).strip()
    if confirm and first != getpass.getpass(f"Confirm {prompt[0].lower()}{prompt[1:]}").strip():
        raise ValueError("Confirmation mismatch.")
    if not first:
        raise ValueError("Value cannot be empty.")
    return first


def _master_passphrase(purpose: str, *, confirm: bool = False) -> str:
    return _env_or_prompt("CADENCE_MASTER_PASSPHRASE", "Master passphrase: ", purpose, confirm=confirm)


def _open_vault() -> CredentialVault:
    return CredentialVault(config.app_dir() / "vault")


def _run_guarded(name: str, body) -> int:
    try:
        return body()
    except PassphraseUnavailable as exc:
        return fail("non_interactive", str(exc), "Set the named environment variable or run with a TTY attached.", exit_code=2)
    except ValueError as exc:
        return fail("invalid_input", str(exc), "Provide matching non-empty values.", exit_code=2)
    except CadenceError as exc:
        return fail_from(exc)
    except Exception as exc:
        logger.exception("%s failed", name)
        return fail(f"{name}_failed", str(exc), "Inspect runtime configuration and retry.")


# -- vault -----------------------------------------------------------------


def cmd_vault_status(args: argparse.Namespace) -> int:
    chk = require_json_flag(args)
    if chk is not None:
        return chk
    return _run_guarded("vault_status", lambda: ok("Vault status.", **_open_vault().status()))


def cmd_vault_setup(args: argparse.Namespace) -> int:
    chk = require_json_flag(args)
    if chk is not None:
        return chk

    def body() -> int:
        result = _open_vault().setup(_master_passphrase("vault setup", confirm=True))
        return ok("Vault created.", **result)

    return _run_guarded("vault_setup", body)


def cmd_vault_unlock(args: argparse.Namespace) -> int:
    chk = require_json_flag(args)
    if chk is not None:
        return chk

    def body() -> int:
        vault = _open_vault()
        result = vault.unlock(_master_passphrase("vault unlock"))
        vault.lock()
        return ok("Vault created and verified." if result["isNewSetup"] else "Master passphrase verified.", **result)

    return _run_guarded("vault_unlock", body)


def cmd_vault_put(args: argparse.Namespace) -> int:
    chk = require_json_flag(args)
    if chk is not None:
        return chk

    def body() -> int:
        vault = _open_vault()
        vault.unlock(_master_passphrase("vault put"))
        try:
            secret = _env_or_prompt("CADENCE_IMPORT_SECRET", f"Keystore password for {args.identity}: ", "vault put")
            result = vault.put_credential(args.identity, secret)
        finally:
            vault.lock()
        return ok("Credential stored.", **result)

    return _run_guarded("vault_put", body)


def cmd_vault_remove(args: argparse.Namespace) -> int:
    chk = require_json_flag(args)
    if chk is not None:
        return chk

    def body() -> int:
        vault = _open_vault()
        vault.unlock(_master_passphrase("vault remove"))
        try:
            result = vault.remove_credential(args.identity)
        finally:
            vault.lock()
        return ok("Credential removed." if result["removed"] else "No credential stored for identity.", **result)

    return _run_guarded("vault_remove", body)


def cmd_vault_change_passphrase(args: argparse.Namespace) -> int:
    chk = require_json_flag(args)
    if chk is not None:
        return chk

    def body() -> int:
        old = _master_passphrase("vault change-passphrase")
        new = _env_or_prompt("CADENCE_NEW_PASSPHRASE", "New master passphrase: ", "vault change-passphrase", confirm=True)
        vault = _open_vault()
        try:
            result = vault.change_passphrase(old, new)
        finally:
            vault.lock()
        return ok("Master passphrase changed.", **result)

    return _run_guarded("vault_change_passphrase", body)


# -- registry / catalogue --------------------------------------------------


def cmd_registry_reconcile(args: argparse.Namespace) -> int:
    chk = require_json_flag(args)
    if chk is not None:
        return chk

    def body() -> int:
        payload = AgentRuntime().reconcile()
        return emit(payload) if payload["ok"] else fail(payload["code"], payload["message"], payload.get("actionHint"), payload.get("details"))

    return _run_guarded("registry_reconcile", body)


def cmd_actions(args: argparse.Namespace) -> int:
    chk = require_json_flag(args)
    if chk is not None:
        return chk
    return _run_guarded("actions", lambda: emit(AgentRuntime().actions()))


# -- worker ----------------------------------------------------------------


def cmd_worker_run(args: argparse.Namespace) -> int:
    chk = require_json_flag(args)
    if chk is not None:
        return chk
    configure_logging()

    secret = os.environ.pop(WORKER_SECRET_ENV, "")
    raw_params = os.environ.pop(WORKER_PARAMS_ENV, "")
    details = {"actionType": args.type, "chain": args.chain, "identity": args.identity}
    if not secret:
        return fail("no_credential", f"{WORKER_SECRET_ENV} is not set.", "Start workers through the supervisor.", details, exit_code=2)
    try:
        params = parse_params(raw_params)
    except ValueError as exc:
        return fail("invalid_input", f"Invalid worker params: {exc}", details=details, exit_code=2)
    if args.max_attempts is not None and args.max_attempts < 1:
        return fail("invalid_input", "--max-attempts must be >= 1.", details=details, exit_code=2)

    stop = threading.Event()
    for signum in (signal.SIGTERM, signal.SIGINT):
        signal.signal(signum, lambda *_: stop.set())

    try:
        worker = Worker(args.type, args.chain, args.identity, secret, params=params, stop_event=stop)
        worker.run(max_attempts=args.max_attempts)
    except SpawnFailure as exc:
        logger.error("Worker cannot continue: %s", exc)
        return fail_from(exc, exit_code=3)
    except CadenceError as exc:
        return fail_from(exc, exit_code=2)
    return ok("Worker stopped.", attempts=worker.attempts, **details)


# -- daemon ----------------------------------------------------------------


def _serve_stdin(runtime: AgentRuntime, stop: threading.Event) -> None:
    for line in sys.stdin:
        line = line.strip()
        if not line:
            continue
        try:
            request = json.loads(line)
        except ValueError as exc:
            fail("invalid_input", f"Request is not valid JSON: {exc}")
            continue
        if not isinstance(request, dict):
            fail("invalid_input", "Request must be a JSON object.")
            continue
        if request.get("op") == "shutdown":
            break
        emit(runtime.dispatch(request))
    stop.set()


def cmd_daemon(args: argparse.Namespace) -> int:
    chk = require_json_flag(args)
    if chk is not None:
        return chk
    configure_logging()

    try:
        runtime = AgentRuntime()
    except CadenceError as exc:
        return fail_from(exc)
    atexit.register(runtime.supervisor.shutdown)

    stop = threading.Event()
    for signum in (signal.SIGTERM, signal.SIGINT):
        signal.signal(signum, lambda *_: stop.set())

    def log_event(event: dict[str, Any]) -> None:
        level = logging.WARNING if event["level"] in ("warning", "error") else logging.INFO
        scope = "/".join(str(part) for part in (event["actionType"], event["chain"], event["identity"]) if part)
        logger.log(level, "%s %s", scope or "runtime", event["text"])

    runtime.sink.subscribe(log_event)

    passphrase = (os.environ.pop("CADENCE_MASTER_PASSPHRASE", "") or "").strip()
    if passphrase:
        unlocked = runtime.vault_unlock(passphrase)
        if not unlocked["ok"]:
            return fail(unlocked["code"], unlocked["message"], unlocked.get("actionHint"), unlocked.get("details"))
    else:
        logger.warning("Vault locked; identities will be deferred until it is unlocked")

    started = runtime.start_background()
    if not started["ok"]:
        return fail(started["code"], started["message"], started.get("actionHint"), started.get("details"))

    if args.control == "stdin":
        threading.Thread(target=_serve_stdin, args=(runtime, stop), name="control-stdin", daemon=True).start()
    logger.info("Daemon running (home %s)", runtime.home)
    stop.wait()

    result = runtime.shutdown()
    return ok("Daemon stopped.", stopped=result["stopped"])


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="cadence-agent", add_help=True)
    sub = p.add_subparsers(dest="top")

    daemon = sub.add_parser("daemon")
    daemon.add_argument("--control", choices=["none", "stdin"], default="none")
    daemon.add_argument("--json", action="store_true")
    daemon.set_defaults(func=cmd_daemon)

    vault = sub.add_parser("vault")
    vault_sub = vault.add_subparsers(dest="vault_cmd")
    v_status = vault_sub.add_parser("status")
    v_status.add_argument("--json", action="store_true")
    v_status.set_defaults(func=cmd_vault_status)

    v_setup = vault_sub.add_parser("setup")
    v_setup.add_argument("--json", action="store_true")
    v_setup.set_defaults(func=cmd_vault_setup)

    v_unlock = vault_sub.add_parser("unlock")
    v_unlock.add_argument("--json", action="store_true")
    v_unlock.set_defaults(func=cmd_vault_unlock)

    v_put = vault_sub.add_parser("put")
    v_put.add_argument("--identity", required=True)
    v_put.add_argument("--json", action="store_true")
    v_put.set_defaults(func=cmd_vault_put)

    v_remove = vault_sub.add_parser("remove")
    v_remove.add_argument("--identity", required=True)
    v_remove.add_argument("--json", action="store_true")
    v_remove.set_defaults(func=cmd_vault_remove)

    v_change = vault_sub.add_parser("change-passphrase")
    v_change.add_argument("--json", action="store_true")
    v_change.set_defaults(func=cmd_vault_change_passphrase)

    registry = sub.add_parser("registry")
    registry_sub = registry.add_subparsers(dest="registry_cmd")
    r_reconcile = registry_sub.add_parser("reconcile")
    r_reconcile.add_argument("--json", action="store_true")
    r_reconcile.set_defaults(func=cmd_registry_reconcile)

    actions = sub.add_parser("actions")
    actions.add_argument("--json", action="store_true")
    actions.set_defaults(func=cmd_actions)

    worker = sub.add_parser("worker")
    worker_sub = worker.add_subparsers(dest="worker_cmd")
    w_run = worker_sub.add_parser("run")
    w_run.add_argument("--type", required=True)
    w_run.add_argument("--chain", required=True)
    w_run.add_argument("--identity", required=True)
    w_run.add_argument("--max-attempts", type=int)
    w_run.add_argument("--json", action="store_true")
    w_run.set_defaults(func=cmd_worker_run)

    return p


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return 2
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
