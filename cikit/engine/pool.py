"""Shared (cpu, memory) capacity pool with FIFO admission."""

from __future__ import annotations

import itertools
import threading
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

from cikit.errors import InvalidResourceRequest, ProvisioningTimeout, StageCancelled
from cikit.model import ResourceRequest

_WAIT_SLICE_SECONDS = 0.05


@dataclass(frozen=True)
class Lease:
    ticket: int
    request: ResourceRequest | None


class CapacityPool:
    """
    Counting-semaphore over (cpu, memory) pairs.

    A `None` budget leaves that dimension unbounded. Waiting requests are granted
    strictly in ticket order; callers that need declaration-order fairness should
    reserve tickets up front with `ticket()`.
    """

    def __init__(self, *, cpu: int | None = None, memory: int | None = None) -> None:
        for label, value in (("cpu", cpu), ("memory", memory)):
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise InvalidResourceRequest(f"Pool {label} budget must be a positive int or None")
        self.cpu = cpu
        self.memory = memory
        self._cond = threading.Condition()
        self._used_cpu = 0
        self._used_memory = 0
        self._queue: deque[int] = deque()
        self._counter = itertools.count(1)
        self._active: dict[int, ResourceRequest | None] = {}

    @property
    def available(self) -> tuple[int | None, int | None]:
        with self._cond:
            return self._available_locked()

    @property
    def in_use(self) -> tuple[int, int]:
        with self._cond:
            return self._used_cpu, self._used_memory

    def _available_locked(self) -> tuple[int | None, int | None]:
        cpu = None if self.cpu is None else self.cpu - self._used_cpu
        memory = None if self.memory is None else self.memory - self._used_memory
        return cpu, memory

    def _check_satisfiable(self, request: ResourceRequest | None) -> None:
        if request is None:
            return
        if self.cpu is not None and request.cpu > self.cpu:
            raise InvalidResourceRequest(
                f"Requested cpu={request.cpu} exceeds pool capacity cpu={self.cpu}"
            )
        if self.memory is not None and request.memory > self.memory:
            raise InvalidResourceRequest(
                f"Requested memory={request.memory} exceeds pool capacity memory={self.memory}"
            )

    def _fits_locked(self, request: ResourceRequest | None) -> bool:
        if request is None:
            return True
        cpu, memory = self._available_locked()
        if cpu is not None and request.cpu > cpu:
            return False
        if memory is not None and request.memory > memory:
            return False
        return True

    def ticket(self, request: ResourceRequest | None) -> int:
        """Reserve a place in the admission queue without blocking."""

        self._check_satisfiable(request)
        with self._cond:
            ticket = next(self._counter)
            self._queue.append(ticket)
            return ticket

    def acquire(
        self,
        request: ResourceRequest | None,
        *,
        timeout: float | None = None,
        ticket: int | None = None,
        cancel_event: threading.Event | None = None,
    ) -> Lease:
        if ticket is None:
            ticket = self.ticket(request)
        else:
            self._check_satisfiable(request)

        started = time.monotonic()
        deadline = None if timeout is None else started + timeout
        with self._cond:
            try:
                while True:
                    if ticket not in self._queue:
                        raise ValueError(f"Unknown or already used capacity ticket: {ticket}")
                    if self._queue[0] == ticket and self._fits_locked(request):
                        self._queue.popleft()
                        if request is not None:
                            self._used_cpu += request.cpu
                            self._used_memory += request.memory
                        self._active[ticket] = request
                        self._cond.notify_all()
                        return Lease(ticket=ticket, request=request)

                    if cancel_event is not None and cancel_event.is_set():
                        raise StageCancelled("Cancelled while waiting for capacity")
                    wait_for = _WAIT_SLICE_SECONDS
                    if deadline is not None:
                        remaining = deadline - time.monotonic()
                        if remaining <= 0:
                            waited = time.monotonic() - started
                            raise ProvisioningTimeout(
                                f"Capacity unavailable after {waited:.2f}s "
                                f"(requested {request.describe() if request else 'none'})",
                                waited_seconds=waited,
                            )
                        wait_for = min(wait_for, remaining)
                    self._cond.wait(wait_for)
            except BaseException:
                if ticket in self._queue:
                    self._queue.remove(ticket)
                    self._cond.notify_all()
                raise

    def release(self, lease: Lease) -> None:
        with self._cond:
            if lease.ticket not in self._active:
                return
            request = self._active.pop(lease.ticket)
            if request is not None:
                self._used_cpu -= request.cpu
                self._used_memory -= request.memory
            self._cond.notify_all()

    def cancel_ticket(self, ticket: int) -> None:
        with self._cond:
            if ticket in self._queue:
                self._queue.remove(ticket)
                self._cond.notify_all()

    @contextmanager
    def lease(
        self,
        request: ResourceRequest | None,
        *,
        timeout: float | None = None,
        ticket: int | None = None,
        cancel_event: threading.Event | None = None,
    ) -> Iterator[Lease]:
        lease = self.acquire(request, timeout=timeout, ticket=ticket, cancel_event=cancel_event)
        try:
            yield lease
        finally:
            self.release(lease)
