import logging
import time
from typing import Callable, TypeVar


logger = logging.getLogger(__name__)

T = TypeVar("T")


class PollPolicy:
    def __init__(self, attempts: int, interval_sec: float):
        if attempts < 1:
            raise ValueError("attempts must be at least 1")
        self.attempts = attempts
        self.interval_sec = interval_sec


class PollTimeout(RuntimeError):
    def __init__(self, *, condition: str, attempts: int, interval_sec: float):
        self.condition = condition
        self.attempts = attempts
        self.interval_sec = interval_sec
        super().__init__(
            f"{condition} not ready after {attempts} attempts "
            f"(~{attempts * interval_sec:g}s)"
        )


def poll(
    check: Callable[[], T | None],
    policy: PollPolicy,
    *,
    condition: str = "condition",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``check`` until it returns a value, at most ``policy.attempts`` times.

    ``None`` and ``""`` mean "not ready yet". Exceptions raised by ``check``
    are not retried; they propagate to the caller unchanged. There is no sleep
    after the final attempt.
    """
    for attempt in range(1, policy.attempts + 1):
        result = check()
        if result is not None and result != "":
            logger.debug("poll ready condition=%s attempt=%s", condition, attempt)
            return result
        if attempt < policy.attempts:
            sleep(policy.interval_sec)
    raise PollTimeout(
        condition=condition,
        attempts=policy.attempts,
        interval_sec=policy.interval_sec,
    )
