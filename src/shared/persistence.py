"""Row locks, sequences and aggregate loading on top of Protean's unit of work.

Protean's repositories and ``UnitOfWork`` give settlement its all-or-nothing
write: every ``repository.add()`` inside ``with UnitOfWork():`` lands on
commit, together with the events the aggregates raised, or not at all. What
they do not give is mutual exclusion for read-check-write sequences, so the
services here take row locks first:

- Row locks are always acquired in sorted key order against a single
  deadline, so two settlements can never wait on each other forever.
- The memory provider snapshots the store at the first repository access in
  a unit of work. Locks must therefore be held before that access, never
  taken half way through.
- Sequences hand out strictly increasing values that are never reused, even
  when the unit of work that drew a value later rolls back.
"""

import threading
import time
from contextlib import contextmanager

from protean.utils.globals import current_domain, current_uow

from shared.errors import LockReleaseFailed, SettlementTimeout
from shared.logging import get_logger

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Row locks
# ---------------------------------------------------------------------------
class RowLocks:
    """Per-key exclusive locks with ordered, deadline-bounded acquisition."""

    def __init__(self) -> None:
        self._locks: dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, key: str) -> threading.RLock:
        with self._guard:
            return self._locks.setdefault(key, threading.RLock())

    @contextmanager
    def hold(self, keys, timeout: float):
        ordered = sorted(set(keys))
        deadline = time.monotonic() + timeout
        acquired = []
        try:
            for key in ordered:
                lock = self._lock_for(key)
                remaining = max(0.0, deadline - time.monotonic())
                if not lock.acquire(timeout=remaining):
                    logger.warning("row_lock_timeout", key=key, timeout=timeout)
                    raise SettlementTimeout(
                        f"Timed out after {timeout}s waiting for {key}",
                        key=key,
                    )
                acquired.append((key, lock))
            yield ordered
        finally:
            self._release(acquired)

    def _release(self, acquired) -> None:
        failed = []
        for key, lock in reversed(acquired):
            try:
                lock.release()
            except RuntimeError:
                failed.append(key)

        if failed:
            logger.critical("row_lock_release_failed", keys=failed)
            raise LockReleaseFailed(f"Could not release locks: {', '.join(failed)}", keys=",".join(failed))


# ---------------------------------------------------------------------------
# Sequences
# ---------------------------------------------------------------------------
class Sequences:
    """Named counters that never hand out the same value twice."""

    def __init__(self) -> None:
        self._values: dict[str, int] = {}
        self._lock = threading.Lock()

    def next_value(self, name: str, start: int = 1) -> int:
        with self._lock:
            value = self._values.get(name, start - 1) + 1
            self._values[name] = value
            return value

    def reset(self) -> None:
        with self._lock:
            self._values.clear()


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------
def load(aggregate_cls, identifier):
    """Fetch an aggregate, reusing the instance the active unit of work holds.

    The unit of work gathers events from the last instance it saw for each
    identity. Loading a second copy of an aggregate that was already changed
    in the same transaction would drop the first copy's events, so the held
    instance wins. Returns ``None`` when nothing is stored under
    ``identifier``.
    """
    if current_uow:
        held = current_uow._identity_map.get(aggregate_cls.meta_.provider, {}).get(identifier)
        if isinstance(held, aggregate_cls):
            return held
    return current_domain.repository_for(aggregate_cls).get_or_none(identifier)


def find_all(aggregate_cls, **criteria) -> list:
    """Every stored aggregate matching ``criteria``, without the default page limit.

    Like ``load``, instances already held by the active unit of work are
    returned in place of the fresh copies the query produced.
    """
    held = {}
    if current_uow:
        held = dict(current_uow._identity_map.get(aggregate_cls.meta_.provider, {}))

    items = current_domain.repository_for(aggregate_cls).query.filter(**criteria).limit(None).all().items

    if held:
        # The query re-registered what it read; put the held instances back
        current_uow._identity_map[aggregate_cls.meta_.provider].update(held)
    return [held[item.id] if isinstance(held.get(item.id), aggregate_cls) else item for item in items]
