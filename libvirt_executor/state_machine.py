from libvirt_executor.models import VmState


ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    VmState.ABSENT.value: {VmState.INSTALLING.value, VmState.DESTROYED.value},
    VmState.INSTALLING.value: {VmState.NETWORK_READY.value, VmState.FAILED.value},
    VmState.NETWORK_READY.value: {VmState.SHELL_READY.value, VmState.FAILED.value},
    VmState.SHELL_READY.value: {
        VmState.JOB_EXECUTING.value,
        VmState.DESTROYED.value,
        VmState.FAILED.value,
    },
    VmState.JOB_EXECUTING.value: {VmState.SHELL_READY.value, VmState.FAILED.value},
    VmState.DESTROYED.value: set(),
    VmState.FAILED.value: {VmState.DESTROYED.value},
}


def can_transition(current: str, target: str) -> bool:
    if current == target:
        return True
    return target in ALLOWED_TRANSITIONS.get(current, set())
