"""Policy configuration, enforcement helpers, and the shared network retry policy."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Literal, TypeVar

from kiln.errors import PolicyError

NetworkMode = Literal["online", "offline"]

T = TypeVar("T")

RetryCallback = Callable[[int, BaseException, float], None]


@dataclass(frozen=True, slots=True)
class Policy:
    require_integrity: bool = True
    network_mode: NetworkMode = "online"


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Bounded retry with exponential backoff.

    ``retries`` counts additional attempts after the first one, so the
    default makes three attempts per URL sleeping 1s then 2s in between.
    """

    retries: int = 2
    backoff: float = 1.0
    factor: float = 2.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False, compare=False)

    def delays(self) -> tuple[float, ...]:
        return tuple(self.backoff * self.factor**attempt for attempt in range(self.retries))

    def call(
        self,
        operation: Callable[[], T],
        *,
        retry_on: tuple[type[BaseException], ...] = (OSError,),
        on_retry: RetryCallback | None = None,
    ) -> T:
        """Run *operation*, retrying only on *retry_on* exceptions.

        The last exception propagates once every attempt has failed.
        """
        delays = self.delays()
        attempt = 0
        while True:
            try:
                return operation()
            except retry_on as exc:
                if attempt >= len(delays):
                    raise
                delay = delays[attempt]
                attempt += 1
                if on_retry is not None:
                    on_retry(attempt, exc, delay)
                if delay > 0:
                    self.sleep(delay)


def ensure_network_allowed(*, policy: Policy, operation: str) -> None:
    if policy.network_mode == "offline":
        raise PolicyError(
            "Network operations are disabled by policy.",
            hint="Switch policy.network_mode to 'online' for this operation.",
            context={"operation": operation},
        )


__all__ = ["NetworkMode", "Policy", "RetryCallback", "RetryPolicy", "ensure_network_allowed"]
