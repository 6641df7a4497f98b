"""Value sources feeding the publisher loop."""

import random
from collections.abc import Sequence
from typing import Any, Protocol


class SensorReadFailure(RuntimeError):
    """Raised when a value source cannot produce a reading."""


class ValueSource(Protocol):
    def read(self) -> tuple[Any, ...]:
        """Return the current physical values, raising SensorReadFailure on I/O errors."""
        ...

    def close(self) -> None: ...


class SimulatedSource:
    """Random-walk readings around a set of starting values.

    Each channel drifts by a small step per read and stays within 10% (at
    least 1.0) of where it started. Stands in for a real sensor when
    running the node without hardware.
    """

    def __init__(
        self,
        start: Sequence[float],
        step: float = 0.01,
        rng: random.Random | None = None,
    ) -> None:
        self._start = tuple(float(v) for v in start)
        self._offsets = [0.0] * len(self._start)
        self._limits = [max(abs(v) * 0.1, 1.0) for v in self._start]
        self._step = step
        self._rng = rng or random.Random()
        self._closed = False

    def read(self) -> tuple[float, ...]:
        if self._closed:
            raise SensorReadFailure("Source is closed")

        values = []
        for index, start in enumerate(self._start):
            limit = self._limits[index]
            offset = self._offsets[index] + self._rng.gauss(0.0, limit * self._step)
            offset = max(-limit, min(limit, offset))
            self._offsets[index] = offset
            values.append(start + offset)
        return tuple(values)

    def close(self) -> None:
        self._closed = True


class SourceSampler:
    """Adapts a ValueSource to the publisher loop's sampling callback."""

    def __init__(self, source: ValueSource, names: Sequence[str]) -> None:
        self._source = source
        self._names = tuple(names)

    @property
    def names(self) -> tuple[str, ...]:
        return self._names

    def __call__(self) -> dict[str, Any]:
        values = self._source.read()
        if len(values) != len(self._names):
            raise SensorReadFailure(
                f"Source returned {len(values)} values for {len(self._names)} metrics"
            )
        return dict(zip(self._names, values))
