"""Observation capture for netfault campaigns."""

from __future__ import annotations

import threading
from collections.abc import Generator
from contextlib import contextmanager
from datetime import UTC, datetime

from netfault.models import ObservationPoint


class CampaignObserver:
    """Collect timestamped observation points while a scenario runs.

    The sequencer records every state transition here and the fault
    controller records each fault it installs and removes.  The workload
    call is wrapped in :meth:`scope`, so the timeline shows when the network
    was impaired relative to when the workload started and stopped.

    Per-target fault calls run on worker threads, so all mutations and
    snapshot reads are guarded by a :class:`threading.Lock`.
    """

    def __init__(self) -> None:
        self._observations: list[ObservationPoint] = []
        self._lock: threading.Lock = threading.Lock()

    def observe(
        self,
        component: str,
        event: str,
        details: dict[str, object] | None = None,
    ) -> None:
        """Record a single observation.

        Args:
            component: What is being observed (e.g. ``"loss10p"``).
            event:     A short event label (e.g. ``"fault_applied"``).
            details:   Optional free-form detail dict.
        """
        point = ObservationPoint(
            timestamp=datetime.now(tz=UTC),
            component=component,
            event=event,
            details=details or {},
        )
        with self._lock:
            self._observations.append(point)

    def get_observations(self) -> list[ObservationPoint]:
        """Return a shallow copy of all observations recorded so far."""
        with self._lock:
            return list(self._observations)

    def events(self, component: str | None = None) -> list[str]:
        """Return the event labels recorded, optionally for one component."""
        with self._lock:
            return [
                p.event
                for p in self._observations
                if component is None or p.component == component
            ]

    @contextmanager
    def scope(
        self, component: str, event_prefix: str = ""
    ) -> Generator[None, None, None]:
        """Context manager that records ``start`` and ``end`` (or ``error``) events.

        Example::

            with observer.scope("cassandra_a", "workload"):
                runner.run(...)
        """
        prefix = f"{event_prefix}_" if event_prefix else ""
        self.observe(component, f"{prefix}start")
        try:
            yield
            self.observe(component, f"{prefix}end")
        except Exception as exc:
            self.observe(
                component,
                f"{prefix}error",
                {"exception_type": type(exc).__name__, "message": str(exc)},
            )
            raise


__all__ = ["CampaignObserver"]
