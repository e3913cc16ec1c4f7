"""Document store — JSON file persistence with atomic replace and an
exclusive mutation guard.

Each store holds one JSON document in one file. Readers load the whole
document; writers replace the whole document. A write goes to a sibling
temporary file which is fsynced and then renamed over the target, so a
reader sees either the previous document or the new one, never a mix.

Mutation goes through mutate(), which runs load → fn → commit while
holding the store's exclusive guard:
- an in-process lock shared by every DocumentStore bound to the same
  file, and
- an advisory flock on a sibling ".lock" file, shared across processes.

Both are acquired with a bounded wait. On expiry StoreBusyError is
raised; nothing has been written at that point.

The guard is not reentrant: calling commit() or mutate() from inside a
mutation function on the same store times out.
"""

from __future__ import annotations

import enum
import fcntl
import json
import logging
import os
import tempfile
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, Optional, TypeVar

from cleanmap.errors import StoreBusyError, StoreCorruptError, StoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Document = dict[str, Any]

DEFAULT_LOCK_TIMEOUT = 5.0
_POLL_INTERVAL = 0.01

_thread_locks: dict[Path, threading.Lock] = {}
_thread_locks_guard = threading.Lock()


def _thread_lock_for(path: Path) -> threading.Lock:
    """Return the process-wide lock for a resolved store path."""
    with _thread_locks_guard:
        lock = _thread_locks.get(path)
        if lock is None:
            lock = threading.Lock()
            _thread_locks[path] = lock
        return lock


class CorruptionPolicy(str, enum.Enum):
    """What load() does when the file exists but cannot be parsed.

    FAIL surfaces StoreCorruptError. RESET logs a warning and carries on
    with an empty document; the next commit overwrites the bad file.
    """
    FAIL = "fail"
    RESET = "reset"


class DocumentStore:
    """A single JSON document persisted to a file.

    Usage:
        store = DocumentStore(Path("data/points.json"), empty=lambda: {"entries": {}})
        total = store.mutate(lambda doc: _add(doc, "id:alice", 10))
        snapshot = store.read()

    upgrade(raw) converts whatever json.load produced into the current
    document layout. It raises ValueError, TypeError or KeyError when the
    content is not a recognisable document, which counts as corruption.
    """

    def __init__(
        self,
        storage_path: Path,
        empty: Callable[[], Document],
        *,
        on_corrupt: CorruptionPolicy = CorruptionPolicy.FAIL,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
        upgrade: Optional[Callable[[Any], Document]] = None,
    ) -> None:
        if lock_timeout <= 0:
            raise ValueError(f"lock_timeout must be positive, got {lock_timeout}")
        self._path = Path(storage_path)
        self._lock_path = self._path.with_name(self._path.name + ".lock")
        self._empty = empty
        self._on_corrupt = CorruptionPolicy(on_corrupt)
        self._lock_timeout = lock_timeout
        self._upgrade = upgrade
        self._thread_lock = _thread_lock_for(self._path.resolve())

    @property
    def path(self) -> Path:
        return self._path

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def load(self) -> Document:
        """Load the committed document.

        A missing or empty file yields the empty document.
        """
        try:
            text = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return self._empty()
        except OSError as e:
            raise StoreError(f"Cannot read {self._path}: {e}") from e

        if not text.strip():
            return self._empty()

        try:
            raw = json.loads(text)
            if self._upgrade is not None:
                return self._upgrade(raw)
            if not isinstance(raw, dict):
                raise TypeError(f"expected a JSON object, got {type(raw).__name__}")
            return raw
        except (ValueError, TypeError, KeyError) as e:
            if self._on_corrupt == CorruptionPolicy.RESET:
                logger.warning(
                    "Corrupt store %s (%s); continuing with an empty document",
                    self._path, e,
                )
                return self._empty()
            raise StoreCorruptError(f"Corrupt store {self._path}: {e}") from e

    def read(self) -> Document:
        """Return a fully committed snapshot without taking the guard."""
        return self.load()

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def commit(self, document: Document) -> None:
        """Replace the stored document under the exclusive guard."""
        with self.exclusive():
            self._write(document)

    def mutate(self, fn: Callable[[Document], T]) -> T:
        """Run load → fn(document) → commit as one indivisible unit.

        fn edits the document in place and returns the caller's result.
        If fn raises, nothing is committed and the exception propagates.
        """
        with self.exclusive():
            document = self.load()
            result = fn(document)
            self._write(document)
            return result

    @contextmanager
    def exclusive(self) -> Iterator[None]:
        """Hold the store's writer guard, waiting at most lock_timeout."""
        deadline = time.monotonic() + self._lock_timeout
        if not self._thread_lock.acquire(timeout=self._lock_timeout):
            raise StoreBusyError(
                f"Timed out after {self._lock_timeout}s waiting for {self._path}"
            )
        try:
            with self._file_lock(deadline):
                yield
        finally:
            self._thread_lock.release()

    @contextmanager
    def _file_lock(self, deadline: float) -> Iterator[None]:
        try:
            self._lock_path.parent.mkdir(parents=True, exist_ok=True)
            handle = self._lock_path.open("a")
        except OSError as e:
            raise StoreError(f"Cannot open lock file {self._lock_path}: {e}") from e

        with handle:
            while True:
                try:
                    fcntl.flock(handle, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() >= deadline:
                        raise StoreBusyError(
                            f"Timed out after {self._lock_timeout}s waiting for "
                            f"{self._lock_path}"
                        ) from None
                    time.sleep(_POLL_INTERVAL)
            logger.debug("Acquired %s", self._lock_path)
            try:
                yield
            finally:
                fcntl.flock(handle, fcntl.LOCK_UN)

    def _write(self, document: Document) -> None:
        payload = json.dumps(document, indent=2, sort_keys=True, ensure_ascii=False)
        parent = self._path.parent
        try:
            parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=parent, prefix=f".{self._path.name}.", suffix=".tmp",
            )
        except OSError as e:
            raise StoreError(f"Cannot write {self._path}: {e}") from e

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self._path)
        except OSError as e:
            _discard(tmp_name)
            raise StoreError(f"Cannot write {self._path}: {e}") from e


def _discard(path: str) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Could not remove temporary file %s: %s", path, e)
