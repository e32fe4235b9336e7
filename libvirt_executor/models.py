from dataclasses import dataclass
from enum import Enum


class VmState(str, Enum):
    ABSENT = "ABSENT"
    INSTALLING = "INSTALLING"
    NETWORK_READY = "NETWORK_READY"
    SHELL_READY = "SHELL_READY"
    JOB_EXECUTING = "JOB_EXECUTING"
    DESTROYED = "DESTROYED"
    FAILED = "FAILED"


class Outcome(str, Enum):
    SUCCESS = "success"
    INFRASTRUCTURE_FAILURE = "infrastructure_failure"
    JOB_FAILURE = "job_failure"
    USAGE_FAILURE = "usage_failure"


@dataclass(frozen=True)
class CreateOptions:
    # Validated by virt-install, not here.
    base_image: str | None
    vcpu_count: int = 4
    ram_mb: int = 4096
    network_label: str = "default"
