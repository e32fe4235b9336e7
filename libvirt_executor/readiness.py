import logging
import time
from typing import Callable

from libvirt_executor.libvirt import LibvirtManager
from libvirt_executor.polling import PollPolicy, poll
from libvirt_executor.ssh import SSHRemoteShell


logger = logging.getLogger(__name__)


def wait_for_address(
    vm_manager: LibvirtManager,
    vm_id: str,
    policy: PollPolicy,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    address = poll(
        lambda: vm_manager.domain_address(vm_id),
        policy,
        condition=f"network address of {vm_id}",
        sleep=sleep,
    )
    logger.info("vm address assigned vm_id=%s address=%s", vm_id, address)
    return address


def wait_for_shell(
    remote_shell: SSHRemoteShell,
    address: str,
    policy: PollPolicy,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    poll(
        lambda: True if remote_shell.probe(address) else None,
        policy,
        condition=f"ssh on {address}",
        sleep=sleep,
    )
    logger.info("vm ssh reachable address=%s", address)
