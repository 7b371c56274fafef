"""
Short-TTL in-memory inventory cache with single-flight refresh
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Tuple

from .base import InventoryObject, ObjectRef
from ..exceptions import StaleDataError, TimeoutError


logger = logging.getLogger(__name__)

Loader = Callable[[ObjectRef, Tuple[str, ...], Optional[float]], Mapping[str, Any]]


class _Fetch:
    """In-flight fetch shared by the caller that started it and every waiter"""
    __slots__ = ('event', 'result', 'error', 'detached')

    def __init__(self):
        self.event = threading.Event()
        self.result: Optional[InventoryObject] = None
        self.error: Optional[BaseException] = None
        # set by invalidation; the result then goes to waiters only
        self.detached = False


class InventoryCache:
    """
    Maps object references to their last fetched property snapshot

    Hits read the entry map without locking. Misses register an in-flight
    marker per reference so concurrent callers collapse onto a single
    remote fetch and share its outcome.
    """

    def __init__(self, loader: Loader, ttl: float = 30.0, max_stale: Optional[float] = None,
                 clock: Callable[[], float] = time.monotonic):
        """
        Args:
            loader: Called as loader(reference, attributes, timeout) on a miss
            ttl: Seconds an entry stays fresh
            max_stale: Oldest age a stale entry may have when served after a
                failed refresh; None means no bound
            clock: Monotonic time source
        """
        self._loader = loader
        self.ttl = ttl
        self.max_stale = max_stale
        self._clock = clock
        self._entries: Dict[ObjectRef, InventoryObject] = {}
        self._inflight: Dict[ObjectRef, _Fetch] = {}
        self._lock = threading.Lock()

    def get(self, reference: ObjectRef, attributes: Optional[Iterable[str]] = None,
            stale_allowed: bool = False, timeout: Optional[float] = None) -> InventoryObject:
        """
        Return a fresh snapshot of reference, fetching it on a miss

        The timeout bounds the whole call, including time spent waiting for
        a fetch another caller started.

        Raises:
            StaleDataError: Refresh failed and the stale entry is older than max_stale
            TimeoutError: An in-flight fetch did not finish within timeout
            HVError: Whatever the loader raised, when no stale entry may be served
        """
        wanted = tuple(attributes or ())

        entry = self._entries.get(reference)
        if entry is not None and self._usable(entry, wanted):
            logger.debug(f"Cache hit for {reference}")
            return entry

        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                entry = self._entries.get(reference)
                if entry is not None and self._usable(entry, wanted):
                    return entry
                fetch = self._inflight.get(reference)
                leader = fetch is None
                if leader:
                    fetch = _Fetch()
                    self._inflight[reference] = fetch

            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            if leader:
                logger.debug(f"Cache miss for {reference}, fetching")
                names = wanted
                if entry is not None:
                    names = tuple(dict.fromkeys(tuple(entry.attributes) + wanted))
                self._fill(reference, names, fetch, remaining)
            elif not fetch.event.wait(remaining):
                error = TimeoutError(f"Timed out after {timeout}s waiting for the fetch of {reference}",
                                     details={'reference': str(reference), 'timeout': timeout})
                return self._serve_stale(reference, entry, wanted, error, stale_allowed)

            if fetch.error is None:
                if fetch.result.covers(wanted):
                    return fetch.result
                # joined a fetch for fewer attributes; go again with ours
                continue

            return self._serve_stale(reference, entry, wanted, fetch.error, stale_allowed)

    def peek(self, reference: ObjectRef) -> Optional[InventoryObject]:
        """Return the cached snapshot regardless of age, without fetching"""
        return self._entries.get(reference)

    def invalidate(self, reference: ObjectRef) -> None:
        with self._lock:
            self._entries.pop(reference, None)
            fetch = self._inflight.pop(reference, None)
            if fetch is not None:
                fetch.detached = True

    def invalidate_all(self) -> None:
        with self._lock:
            for fetch in self._inflight.values():
                fetch.detached = True
            self._entries.clear()
            self._inflight.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, reference: ObjectRef) -> bool:
        return reference in self._entries

    def _usable(self, entry: InventoryObject, wanted: Tuple[str, ...]) -> bool:
        return entry.age(self._clock()) < self.ttl and entry.covers(wanted)

    def _fill(self, reference: ObjectRef, names: Tuple[str, ...], fetch: _Fetch,
              timeout: Optional[float]) -> None:
        try:
            attributes = self._loader(reference, names, timeout)
            fetch.result = InventoryObject(
                reference=reference,
                kind=reference.kind,
                attributes=dict(attributes),
                fetched_at=self._clock(),
            )
        except Exception as e:
            # handed to every waiter, re-raised by each
            fetch.error = e
        finally:
            with self._lock:
                if fetch.result is not None and not fetch.detached:
                    self._entries[reference] = fetch.result
                if self._inflight.get(reference) is fetch:
                    del self._inflight[reference]
            fetch.event.set()

    def _serve_stale(self, reference: ObjectRef, entry: Optional[InventoryObject],
                     wanted: Tuple[str, ...], error: BaseException,
                     stale_allowed: bool) -> InventoryObject:
        # an entry without the requested attributes answers nothing
        if not stale_allowed or entry is None or not entry.covers(wanted):
            raise error

        age = entry.age(self._clock())
        if self.max_stale is not None and age > self.max_stale:
            raise StaleDataError(
                f"Refresh of {reference} failed and cached data is {age:.0f}s old "
                f"(limit {self.max_stale:.0f}s)",
                details={'reference': str(reference), 'age': age},
            ) from error

        logger.warning(f"Refresh of {reference} failed ({error}), serving data {age:.0f}s old")
        return entry
