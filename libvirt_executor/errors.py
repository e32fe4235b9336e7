"""Failure taxonomy shared by every verb.

The kind carried by an error decides the process exit code: gitlab-runner
retries a job on ``SYSTEM_FAILURE_EXIT_CODE`` and reports it broken on
``BUILD_FAILURE_EXIT_CODE``.
"""

from enum import Enum


class FailureKind(str, Enum):
    USAGE = "usage_failure"
    INFRASTRUCTURE = "infrastructure_failure"
    JOB = "job_failure"


class ExecutorError(RuntimeError):
    kind = FailureKind.INFRASTRUCTURE

    def __init__(self, message: str, *, stage: str | None = None):
        self.message = message
        self.stage = stage
        super().__init__(message)


class UsageFailure(ExecutorError):
    kind = FailureKind.USAGE


class InfrastructureFailure(ExecutorError):
    kind = FailureKind.INFRASTRUCTURE


class JobCancelled(InfrastructureFailure):
    def __init__(self, signal_name: str):
        self.signal_name = signal_name
        super().__init__(f"job cancelled by {signal_name}", stage="cancel")


class JobFailure(ExecutorError):
    kind = FailureKind.JOB

    def __init__(self, message: str, *, exit_status: int, stage: str | None = None):
        self.exit_status = exit_status
        super().__init__(message, stage=stage)


class CommandError(RuntimeError):
    def __init__(
        self, *, action: str, command: list[str], returncode: int, stderr: str = ""
    ):
        self.action = action
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        # Full output stays on .stderr; the message carries its last line.
        lines = [line.strip() for line in stderr.splitlines() if line.strip()]
        detail = lines[-1] if lines else f"exit status {returncode}"
        super().__init__(f"{action} failed: {detail}")
