"""
Batch execution helpers for nmapy.

Resampling iterations and leave-one-out refits are independent units of
work. This module partitions them into chunks, runs the chunks on a
thread pool, and supports cooperative cancellation between units. It
also provides the memoizing cell used for on-demand analysis stages.
"""

from __future__ import annotations
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Generic, List, Optional, Sequence, TypeVar
import hashlib
import logging
import threading

import numpy as np

from nmapy.core.exceptions import AnalysisCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class CancellationToken:
    """Cooperative cancellation flag shared between a caller and its workers."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        """Request cancellation."""
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        """Raise AnalysisCancelled if cancellation was requested."""
        if self._event.is_set():
            raise AnalysisCancelled("Batch cancelled")


def partition(items: Sequence[T], n_chunks: int) -> List[List[T]]:
    """
    Split items into at most ``n_chunks`` contiguous, non-empty chunks.

    Args:
        items: Units of work
        n_chunks: Desired number of chunks

    Returns:
        List of chunks, in order
    """
    items = list(items)
    if not items:
        return []
    n_chunks = max(1, min(n_chunks, len(items)))
    size, extra = divmod(len(items), n_chunks)
    chunks = []
    start = 0
    for k in range(n_chunks):
        stop = start + size + (1 if k < extra else 0)
        chunks.append(items[start:stop])
        start = stop
    return chunks


def run_partitioned(
    items: Sequence[T],
    work: Callable[[List[T], Optional[CancellationToken]], R],
    n_workers: int = 1,
    token: Optional[CancellationToken] = None
) -> List[R]:
    """
    Run ``work`` over contiguous chunks of ``items``.

    Each chunk is processed by one call to ``work`` that accumulates
    locally; the per-chunk results are returned in chunk order for the
    caller to merge.

    Args:
        items: Units of work
        work: Function of (chunk, token) returning a partial aggregate
        n_workers: Number of worker threads
        token: Cancellation token checked by ``work`` between units

    Returns:
        Partial aggregates, one per chunk

    Raises:
        AnalysisCancelled: If the token was cancelled; no partials are returned
    """
    chunks = partition(items, n_workers)
    if token is not None:
        token.raise_if_cancelled()

    if n_workers <= 1 or len(chunks) <= 1:
        return [work(chunk, token) for chunk in chunks]

    partials: List[Optional[R]] = [None] * len(chunks)
    with ThreadPoolExecutor(max_workers=n_workers) as executor:
        futures = {
            executor.submit(work, chunk, token): k
            for k, chunk in enumerate(chunks)
        }
        try:
            for future in as_completed(futures):
                partials[futures[future]] = future.result()
                logger.debug("Chunk %d of %d finished", futures[future] + 1, len(chunks))
        except BaseException:
            # stop the remaining chunks at their next unit boundary
            if token is not None:
                token.cancel()
            for f in futures:
                f.cancel()
            raise
    return partials


def fingerprint(*parts: Any) -> str:
    """
    Stable SHA-256 digest of analysis inputs.

    Contrasts, treatment sets, numbers, strings and nested sequences are
    supported; numpy arrays are hashed by dtype, shape and raw bytes.
    """
    h = hashlib.sha256()

    def feed(obj: Any) -> None:
        if isinstance(obj, np.ndarray):
            h.update(b"A")
            h.update(str(obj.dtype).encode())
            h.update(str(obj.shape).encode())
            h.update(np.ascontiguousarray(obj).tobytes())
        elif isinstance(obj, (list, tuple)):
            h.update(b"[")
            for o in obj:
                feed(o)
            h.update(b"]")
        elif isinstance(obj, dict):
            h.update(b"{")
            for k in sorted(obj, key=str):
                feed(str(k))
                feed(obj[k])
            h.update(b"}")
        elif isinstance(obj, float):
            h.update(b"f" + obj.hex().encode())
        elif hasattr(obj, "to_dict"):
            feed(obj.to_dict())
        elif hasattr(obj, "labels"):
            feed(tuple(obj.labels))
        else:
            h.update(b"s" + repr(obj).encode())
        h.update(b";")

    for p in parts:
        feed(p)
    return h.hexdigest()


@dataclass
class LazyCell(Generic[T]):
    """
    Compute-once cell keyed by an input fingerprint.

    The factory runs on the first ``get()``; later calls return the
    stored value. Concurrent first calls are serialized.
    """

    key: str
    factory: Callable[[], T]
    _value: Any = field(default=None, repr=False)
    _ready: bool = field(default=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def ready(self) -> bool:
        return self._ready

    def get(self, factory: Optional[Callable[[], T]] = None) -> T:
        """
        Value of the cell, computing it on first use.

        Args:
            factory: Replaces the stored factory for this computation only
                (e.g. to bind a cancellation token); ignored once ready
        """
        if not self._ready:
            with self._lock:
                if not self._ready:
                    self._value = (factory or self.factory)()
                    self._ready = True
        return self._value


class CellStore:
    """Memo of LazyCells keyed by (stage, fingerprint)."""

    def __init__(self):
        self._cells: Dict[str, LazyCell] = {}
        self._lock = threading.Lock()

    def cell(self, stage: str, key: str, factory: Callable[[], T]) -> LazyCell[T]:
        name = f"{stage}:{key}"
        with self._lock:
            if name not in self._cells:
                self._cells[name] = LazyCell(key=key, factory=factory)
            return self._cells[name]

    def ready(self, stage: str, key: str) -> bool:
        """Whether the cell for (stage, key) exists and holds a value."""
        with self._lock:
            cell = self._cells.get(f"{stage}:{key}")
        return cell is not None and cell.ready

    def __len__(self) -> int:
        return len(self._cells)
