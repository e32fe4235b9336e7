import logging
import signal
from contextlib import contextmanager
from typing import Iterator

from libvirt_executor.errors import JobCancelled


logger = logging.getLogger(__name__)

CANCEL_SIGNALS = (signal.SIGTERM, signal.SIGINT)


def _raise_cancelled(signum: int, _frame: object) -> None:
    name = signal.Signals(signum).name
    logger.warning("received %s, aborting", name)
    raise JobCancelled(name)


@contextmanager
def cancellable() -> Iterator[None]:
    """Turn SIGTERM/SIGINT into ``JobCancelled`` for the duration of the block.

    The exception interrupts a poll sleep or a running ``subprocess.run``,
    which kills its child before re-raising.
    """
    previous = {sig: signal.getsignal(sig) for sig in CANCEL_SIGNALS}
    for sig in CANCEL_SIGNALS:
        signal.signal(sig, _raise_cancelled)
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
