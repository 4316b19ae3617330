"""
Per-offering critical sections.

Submissions for the same offering run one at a time inside this process; the
SQL store adds a row lock so separate worker processes are serialized too.
"""
import threading
from contextlib import contextmanager
from typing import Iterator

from ..utils.references import DocumentRef

_lock = threading.Lock()
# One entry per offering ever submitted to, so it stays bounded by the catalog size.
_locks: dict[str, threading.Lock] = {}


def _lock_for(key: str) -> threading.Lock:
    with _lock:
        lock = _locks.get(key)
        if lock is None:
            lock = threading.Lock()
            _locks[key] = lock
        return lock


def offering_key(ref: DocumentRef) -> str:
    return f"offering:{ref.key}"


@contextmanager
def offering_lock(ref: DocumentRef, timeout_s: float | None = None) -> Iterator[None]:
    """
    Hold the critical section for one offering.

    `ref` must be the canonical reference read from the store, not whatever the
    client sent, so that an id and a document id for the same offering share a lock.
    """
    lock = _lock_for(offering_key(ref))
    acquired = lock.acquire(timeout=timeout_s) if timeout_s is not None else lock.acquire()
    if not acquired:
        raise TimeoutError(f"Timed out waiting for {offering_key(ref)}")
    try:
        yield
    finally:
        lock.release()
