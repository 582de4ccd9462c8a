"""Time and randomness providers, injected so tests can pin them."""
import random
from datetime import datetime, timezone
from typing import Optional, Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...


class RandomSource(Protocol):
    def next(self) -> float:
        """Return a uniform float in [0, 100)."""
        ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock:
    def __init__(self, moment: datetime):
        self.moment = moment

    def now(self) -> datetime:
        return self.moment


class UniformRandomSource:
    def __init__(self, seed: Optional[int] = None):
        self._rng = random.Random(seed)

    def next(self) -> float:
        return self._rng.random() * 100
