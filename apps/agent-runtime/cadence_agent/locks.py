"""Per-(identity, chain) submission lock shared by every worker process.

Workers for different action types may drive the same identity concurrently;
anything that can consume a transaction nonce runs under this lock.
"""

from __future__ import annotations

import contextlib
import fcntl
import pathlib
import re
import time
from typing import Iterator

from cadence_agent import config
from cadence_agent.errors import LockTimeout
from cadence_agent.storage import ensure_private_dir

LOCK_POLL_SEC = 0.25


def lock_path(identity: str, chain: str, directory: pathlib.Path | None = None) -> pathlib.Path:
    safe = re.sub(r"[^A-Za-z0-9._@-]", "_", f"{identity}.{chain}")
    return (directory or config.lock_dir()) / f"{safe}.lock"


@contextlib.contextmanager
def identity_lock(
    identity: str,
    chain: str,
    *,
    timeout_sec: float | None = None,
    directory: pathlib.Path | None = None,
) -> Iterator[pathlib.Path]:
    path = lock_path(identity, chain, directory)
    ensure_private_dir(path.parent)
    timeout = config.lock_timeout_sec() if timeout_sec is None else timeout_sec
    deadline = time.monotonic() + timeout
    with open(path, "a+") as handle:
        while True:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    raise LockTimeout(
                        f"Timed out after {timeout}s waiting for the submission lock of {identity} on {chain}.",
                        details={"identity": identity, "chain": chain},
                    )
                time.sleep(LOCK_POLL_SEC)
        try:
            yield path
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
