"""Identity registry: mirrors the identity source directory and starts workers.

Two independent triggers feed `reconcile()`: a polling watcher that reacts to
record changes once they have settled for the debounce window, and a periodic
pass that catches anything the watcher missed. Either failing leaves the other
running.
"""

from __future__ import annotations

import json
import logging
import os
import pathlib
import shutil
import threading
import time
from typing import Any

from cadence_agent import agent, config
from cadence_agent.agent import ChainAgent
from cadence_agent.errors import AlreadyRunning, CadenceError, SubprocessTimeout
from cadence_agent.events import EventSink
from cadence_agent.storage import ensure_private_dir
from cadence_agent.supervisor import Supervisor
from cadence_agent.vault import CredentialVault, validate_identity_name

logger = logging.getLogger(__name__)

WATCH_POLL_SEC = 0.5

Snapshot = dict[str, tuple[int, int]]


class IdentityRegistry:
    def __init__(
        self,
        vault: CredentialVault,
        supervisor: Supervisor,
        sink: EventSink,
        *,
        source_dir: pathlib.Path | None = None,
        local_dir: pathlib.Path | None = None,
        chain_agent: ChainAgent | None = None,
        sync_interval_sec: float | None = None,
        debounce_sec: float = config.DEFAULT_WATCH_DEBOUNCE_SEC,
        poll_sec: float = WATCH_POLL_SEC,
    ):
        self.vault = vault
        self.supervisor = supervisor
        self.sink = sink
        self.source_dir = source_dir or config.identity_source_dir()
        self.local_dir = local_dir or config.local_identity_dir()
        self.chain_agent = chain_agent
        self.sync_interval_sec = sync_interval_sec or config.sync_interval_sec()
        self.debounce_sec = debounce_sec
        self.poll_sec = poll_sec

        self._identities: dict[str, dict[str, Any]] = {}
        self._deferred: set[str] = set()
        self._mutex = threading.RLock()
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._last_snapshot: Snapshot | None = None
        self._pending_since: float | None = None

    # -- source scanning ---------------------------------------------------

    def _source_records(self) -> dict[str, pathlib.Path]:
        if not self.source_dir.is_dir():
            return {}
        records = {}
        for entry in sorted(self.source_dir.iterdir()):
            if entry.name.startswith(".") or not entry.is_file():
                continue
            records[entry.name] = entry
        return records

    def snapshot(self) -> Snapshot:
        result: Snapshot = {}
        for name, path in self._source_records().items():
            try:
                st = path.stat()
            except FileNotFoundError:
                continue
            result[name] = (st.st_mtime_ns, st.st_size)
        return result

    def _needs_copy(self, source: pathlib.Path, dest: pathlib.Path) -> bool:
        if not dest.exists():
            return True
        src_stat = source.stat()
        dest_stat = dest.stat()
        return src_stat.st_mtime > dest_stat.st_mtime or src_stat.st_size != dest_stat.st_size

    # -- reconciliation ----------------------------------------------------

    def reconcile(self) -> dict[str, Any]:
        with self._mutex:
            ensure_private_dir(self.local_dir)
            synced = 0
            errors: list[dict[str, str]] = []
            added: list[str] = []
            removed: list[str] = []

            records = self._source_records()
            for name, source in records.items():
                try:
                    validate_identity_name(name)
                    dest = self.local_dir / name
                    if self._needs_copy(source, dest):
                        shutil.copy2(source, dest)
                        if os.name != "nt":
                            os.chmod(dest, 0o600)
                        synced += 1
                    st = dest.stat()
                    record = self._identities.get(name)
                    if record is None:
                        self._identities[name] = {
                            "name": name,
                            "file": str(dest),
                            "size": st.st_size,
                            "mtime": st.st_mtime,
                            "addresses": {},
                        }
                        added.append(name)
                    else:
                        if st.st_size != record["size"] or st.st_mtime != record["mtime"]:
                            record["addresses"] = {}
                        record.update(size=st.st_size, mtime=st.st_mtime)
                except (OSError, CadenceError) as exc:
                    logger.warning("Failed to sync identity %s: %s", name, exc)
                    errors.append({"identity": name, "error": str(exc)})

            for name in sorted(set(self._identities) - set(records)):
                del self._identities[name]
                self._deferred.discard(name)
                removed.append(name)

            for name in added:
                self.sink.emit(f"identity added: {name}", identity=name, level="info")
            for name in removed:
                # Local copy and running workers are left alone.
                self.sink.emit(f"identity removed from source: {name}", identity=name, level="warning")

            started, skipped, start_errors = self._start_workers(added)
            errors.extend(start_errors)

            if synced or added or removed or errors:
                logger.info(
                    "Reconciled identities: %d synced, %d added, %d removed, %d errors",
                    synced,
                    len(added),
                    len(removed),
                    len(errors),
                )
            return {
                "synced": synced,
                "total": len(records),
                "errors": errors,
                "added": added,
                "removed": removed,
                "started": started,
                "skipped": skipped,
                "deferred": sorted(self._deferred),
            }

    def _start_workers(self, names: list[str]) -> tuple[int, int, list[dict[str, str]]]:
        if not self.vault.is_unlocked:
            if names:
                self._deferred.update(names)
                logger.warning("Vault locked; deferring worker start for %d identities", len(names))
                self.sink.emit(
                    f"vault locked; deferred {len(names)} identities until unlock",
                    level="warning",
                )
            return 0, 0, []

        pending = sorted(set(names) | self._deferred)
        self._deferred.clear()
        started = skipped = 0
        errors: list[dict[str, str]] = []
        for name in pending:
            for chain in self.supervisor.chains:
                for action_type in self.supervisor.action_types:
                    try:
                        self.supervisor.start(action_type, chain, name)
                        started += 1
                    except AlreadyRunning:
                        skipped += 1
                    except CadenceError as exc:
                        logger.warning("Could not start %s/%s for %s: %s", action_type, chain, name, exc)
                        errors.append({"identity": name, "error": f"{action_type}/{chain}: {exc}"})
        return started, skipped, errors

    def identities(self) -> list[dict[str, Any]]:
        with self._mutex:
            return [json.loads(json.dumps(record)) for _, record in sorted(self._identities.items())]

    def deferred(self) -> list[str]:
        with self._mutex:
            return sorted(self._deferred)

    # -- address resolution ------------------------------------------------

    def _address_from_record(self, name: str) -> str | None:
        path = self.local_dir / name
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None
        raw = data.get("address") if isinstance(data, dict) else None
        if not isinstance(raw, str):
            return None
        value = raw if raw.lower().startswith("0x") else "0x" + raw
        return agent.to_checksum_address(value) if agent.is_hex_address(value) else None

    def resolve_address(self, name: str, chain: str, secret: str | None = None) -> str | None:
        with self._mutex:
            record = self._identities.get(name)
            if record is not None and chain in record["addresses"]:
                return record["addresses"][chain]

        address = self._address_from_record(name)
        if address is None and self.chain_agent is not None and secret:
            try:
                address = self.chain_agent.address(name, secret)
            except SubprocessTimeout as exc:
                logger.warning("Address lookup for %s timed out: %s", name, exc)

        if address is not None:
            with self._mutex:
                record = self._identities.get(name)
                if record is not None:
                    record["addresses"][chain] = address
        return address

    # -- triggers ----------------------------------------------------------

    def check_for_changes(self, now: float | None = None) -> bool:
        """One watcher tick; returns True when a reconciliation was triggered."""
        now = time.monotonic() if now is None else now
        current = self.snapshot()
        if self._last_snapshot is None:
            self._last_snapshot = current
            return False
        if current != self._last_snapshot:
            self._last_snapshot = current
            self._pending_since = now
            return False
        if self._pending_since is not None and now - self._pending_since >= self.debounce_sec:
            self._pending_since = None
            self._safe_reconcile("watch")
            return True
        return False

    def _safe_reconcile(self, trigger: str) -> None:
        try:
            self.reconcile()
        except Exception:
            logger.exception("Identity reconciliation (%s trigger) failed", trigger)

    def _watch_loop(self) -> None:
        while not self._stop.wait(self.poll_sec):
            try:
                self.check_for_changes()
            except Exception:
                logger.exception("Identity watcher tick failed")

    def _periodic_loop(self) -> None:
        while not self._stop.wait(self.sync_interval_sec):
            self._safe_reconcile("periodic")

    def start(self) -> dict[str, Any]:
        result = self.reconcile()
        self._last_snapshot = self.snapshot()
        self._stop.clear()
        for target, name in ((self._watch_loop, "identity-watcher"), (self._periodic_loop, "identity-sync")):
            thread = threading.Thread(target=target, name=name, daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info("Watching %s (periodic sync every %ss)", self.source_dir, self.sync_interval_sec)
        return result

    def stop(self) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=5)
        self._threads = []
