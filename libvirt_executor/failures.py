"""Map failures onto the exit codes gitlab-runner understands.

Anything that is not explicitly a usage or job failure is treated as an
infrastructure failure so the runner retries the job on a fresh VM.
"""

import logging
from contextlib import contextmanager
from typing import Callable, Iterator

import click

from libvirt_executor.config import USAGE_EXIT_CODE, ExecutorSettings
from libvirt_executor.errors import ExecutorError, FailureKind, InfrastructureFailure
from libvirt_executor.models import Outcome


logger = logging.getLogger(__name__)

_OUTCOME_BY_KIND = {
    FailureKind.USAGE: Outcome.USAGE_FAILURE,
    FailureKind.INFRASTRUCTURE: Outcome.INFRASTRUCTURE_FAILURE,
    FailureKind.JOB: Outcome.JOB_FAILURE,
}


def classify(exc: BaseException) -> Outcome:
    if isinstance(exc, ExecutorError):
        return _OUTCOME_BY_KIND[exc.kind]
    if isinstance(exc, click.UsageError):
        return Outcome.USAGE_FAILURE
    return Outcome.INFRASTRUCTURE_FAILURE


def exit_code_for(outcome: Outcome, settings: ExecutorSettings) -> int:
    if outcome == Outcome.SUCCESS:
        return 0
    if outcome == Outcome.JOB_FAILURE:
        return settings.build_failure_exit_code
    if outcome == Outcome.USAGE_FAILURE:
        return USAGE_EXIT_CODE
    return settings.system_failure_exit_code


@contextmanager
def failure_boundary(stage: str) -> Iterator[None]:
    """Tag any unclassified error raised inside the block as infrastructure."""
    try:
        yield
    except ExecutorError:
        raise
    except Exception as exc:  # noqa: BLE001
        raise InfrastructureFailure(f"{stage}: {exc}", stage=stage) from exc


def error_message(exc: BaseException) -> str:
    message = exc.message if isinstance(exc, ExecutorError) else str(exc)
    lines = [line.strip() for line in message.splitlines() if line.strip()]
    return " ".join(lines) or exc.__class__.__name__


def report(exc: BaseException) -> None:
    stderr = getattr(exc.__cause__, "stderr", None) or getattr(exc, "stderr", None)
    if isinstance(stderr, str) and stderr.strip():
        logger.debug("command stderr:\n%s", stderr)
    click.echo(f"ERROR: {error_message(exc)}", err=True)


def resolve(action: Callable[[], Outcome]) -> Outcome:
    try:
        return action()
    except Exception as exc:  # noqa: BLE001
        outcome = classify(exc)
        logger.debug("verb failed outcome=%s", outcome.value, exc_info=exc)
        report(exc)
        return outcome
