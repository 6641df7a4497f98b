"""Periodic NDATA publishing."""

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import replace
from typing import Any

from ..proto import Metric, timestamp_ms
from .scheduler import ScheduledTask, Scheduler
from .sensors import SensorReadFailure

logger = logging.getLogger(__name__)

Sampler = Callable[[], Mapping[str, Any]]

# Hands a delta to the session; returns whether it was published
Emitter = Callable[[tuple[Metric, ...]], bool]


class PublisherLoop:
    """Samples live values on a fixed period and emits delta payloads.

    Only the declared metrics are reported; each keeps the datatype and
    alias it was born with. A failed sample skips that tick and the loop
    carries on.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        period_ms: int,
        sample: Sampler,
        emit: Emitter,
        declarations: Sequence[Metric],
        clock: Callable[[], int] = timestamp_ms,
    ) -> None:
        self._scheduler = scheduler
        self._period_ms = period_ms
        self._sample = sample
        self._emit = emit
        self._declared = {metric.name: metric for metric in declarations}
        self._clock = clock
        self._handle: ScheduledTask | None = None

    @property
    def running(self) -> bool:
        return self._handle is not None and not self._handle.cancelled

    @property
    def period_ms(self) -> int:
        return self._period_ms

    def start(self) -> None:
        if self.running:
            return
        self._handle = self._scheduler.schedule(self._period_ms, self.tick)
        logger.debug("Publisher loop started (%d ms)", self._period_ms)

    def cancel(self) -> None:
        """Stop scheduling ticks. Safe to call more than once."""
        handle, self._handle = self._handle, None
        if handle is not None:
            handle.cancel()
            logger.debug("Publisher loop cancelled")

    def build_delta(self, values: Mapping[str, Any], timestamp: int | None = None) -> tuple[Metric, ...]:
        """Turn sampled values into metrics, in declaration order."""
        metrics = []
        for name, declared in self._declared.items():
            if name in values:
                metrics.append(replace(declared, value=values[name], timestamp=timestamp))
        return tuple(metrics)

    def tick(self) -> bool:
        """Sample once and emit. Returns whether a payload went out."""
        try:
            values = self._sample()
        except SensorReadFailure as exc:
            logger.warning("Skipping publish tick: %s", exc)
            return False

        metrics = self.build_delta(values, self._clock())
        if not metrics:
            logger.debug("Nothing to report this tick")
            return False
        return self._emit(metrics)
