import asyncio


class HealthGauge:
    """
    A makeshift health check for readiness probes.

    Handlers call `womp` when an upstream call or a database write fails outside of regular
    flow-control (a real error, not a 4xx answer to the client). A background task calls `tick`
    periodically, which lets the counter drain again. A burst of failures pushes the value over
    the threshold and `is_healthy` returns false until it drains.
    """

    def __init__(self, value: int = 0, health_threshold: int = 100) -> None:
        self._value = value
        self._health_threshold = health_threshold
        self._lock = asyncio.Lock()

    async def womp(self, d=1) -> int:
        async with self._lock:
            self._value += int(d)
            return self._value

    async def tick(self) -> None:
        async with self._lock:
            if self._value > 0:
                self._value -= 1

    async def value(self) -> int:
        async with self._lock:
            return self._value

    async def is_healthy(self) -> bool:
        async with self._lock:
            return self._value <= self._health_threshold
