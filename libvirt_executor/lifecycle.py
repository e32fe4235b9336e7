import logging
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator

import click

from libvirt_executor.config import ExecutorSettings
from libvirt_executor.errors import (
    ExecutorError,
    InfrastructureFailure,
    JobFailure,
    UsageFailure,
)
from libvirt_executor.failures import failure_boundary
from libvirt_executor.identity import VmIdentity, identity_for
from libvirt_executor.libvirt import LibvirtManager
from libvirt_executor.models import CreateOptions, Outcome, VmState
from libvirt_executor.polling import PollPolicy, PollTimeout
from libvirt_executor.readiness import wait_for_address, wait_for_shell
from libvirt_executor.sections import section
from libvirt_executor.ssh import SSH_CONNECTION_FAILURE_STATUS, SSHRemoteShell
from libvirt_executor.state_machine import can_transition


logger = logging.getLogger(__name__)


def _unlink_if_exists(path: Path) -> bool:
    if not path.exists() or not path.is_file():
        return False
    path.unlink(missing_ok=True)
    return True


class JobLifecycle:
    """create, run and cleanup for the VM of a single job.

    Every verb runs in its own process, so the instance only ever sees the
    state implied by the verb it was invoked for.
    """

    def __init__(
        self,
        settings: ExecutorSettings,
        identity: VmIdentity,
        vm_manager: LibvirtManager,
        remote_shell: SSHRemoteShell,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        self.identity = identity
        self.vm_manager = vm_manager
        self.remote_shell = remote_shell
        self.sleep = sleep
        self.state = VmState.ABSENT

    @property
    def vm_id(self) -> str:
        return self.identity.vm_id

    def _transition(self, target: VmState) -> None:
        if not can_transition(self.state.value, target.value):
            raise InfrastructureFailure(
                f"invalid vm state transition {self.state.value} -> {target.value}",
                stage="state",
            )
        logger.info("vm state vm_id=%s %s -> %s", self.vm_id, self.state.value, target.value)
        self.state = target

    @contextmanager
    def _verb(self, name: str, start: VmState) -> Iterator[None]:
        self.state = start
        try:
            yield
        except ExecutorError as exc:
            logger.info(
                "vm %s failed vm_id=%s state=%s kind=%s",
                name,
                self.vm_id,
                self.state.value,
                exc.kind.value,
            )
            if can_transition(self.state.value, VmState.FAILED.value):
                self.state = VmState.FAILED
            raise

    def create(self, options: CreateOptions) -> Outcome:
        if not options.base_image:
            raise UsageFailure("base image is required (-i <file>)", stage="create")

        with self._verb("create", VmState.ABSENT):
            with section("install_vm", "Installing VM"):
                self._transition(VmState.INSTALLING)
                with failure_boundary("create_overlay"):
                    self.vm_manager.create_overlay(
                        options.base_image, self.identity.disk_image_path
                    )
                with failure_boundary("install_vm"):
                    self.vm_manager.install(
                        self.vm_id, self.identity.disk_image_path, options
                    )

            with section("init_vm", "Initializing VM"):
                address = self._wait_for_address()
                self._transition(VmState.NETWORK_READY)
                click.echo(f"VM got ip: {address}")

                self._wait_for_shell(address)
                self._transition(VmState.SHELL_READY)
                click.echo("VM accessible by ssh")
        return Outcome.SUCCESS

    def _wait_for_address(self) -> str:
        policy = PollPolicy(
            self.settings.ip_wait_attempts, self.settings.ip_wait_interval_sec
        )
        with failure_boundary("wait_ip"):
            try:
                return wait_for_address(
                    self.vm_manager, self.vm_id, policy, sleep=self.sleep
                )
            except PollTimeout as exc:
                raise InfrastructureFailure(
                    f"VM {self.vm_id} got no ip after {exc.attempts} attempts, exiting...",
                    stage="wait_ip",
                ) from exc

    def _wait_for_shell(self, address: str) -> None:
        policy = PollPolicy(
            self.settings.ssh_wait_attempts, self.settings.ssh_wait_interval_sec
        )
        with failure_boundary("wait_ssh"):
            try:
                wait_for_shell(self.remote_shell, address, policy, sleep=self.sleep)
            except PollTimeout as exc:
                raise InfrastructureFailure(
                    f"sshd on {address} not reachable after {exc.attempts} attempts, exiting...",
                    stage="wait_ssh",
                ) from exc

    def run(self, script_path: Path, stage: str | None = None) -> Outcome:
        script_path = Path(script_path)
        if not script_path.is_file():
            raise UsageFailure(f"script not found: {script_path}", stage="run")

        with self._verb("run", VmState.SHELL_READY):
            name = stage or "run_step_script"
            title = f"Run {stage}" if stage else "Run step script"
            with section(name, title):
                with failure_boundary("resolve_address"):
                    address = self.vm_manager.domain_address(self.vm_id)
                if not address:
                    raise InfrastructureFailure(
                        f"VM {self.vm_id} has no network address",
                        stage="resolve_address",
                    )

                self._transition(VmState.JOB_EXECUTING)
                with failure_boundary("run_script"):
                    status = self.remote_shell.run_script(address, script_path)
                if status == SSH_CONNECTION_FAILURE_STATUS:
                    raise InfrastructureFailure(
                        f"ssh session to {address} failed (exit status {status})",
                        stage="run_script",
                    )
                if status != 0:
                    raise JobFailure(
                        f"Building process error (exit status {status})",
                        exit_status=status,
                        stage="run_script",
                    )
                self._transition(VmState.SHELL_READY)
        return Outcome.SUCCESS

    def cleanup(self) -> Outcome:
        with self._verb("cleanup", VmState.SHELL_READY):
            with failure_boundary("shutdown"):
                stopped = self.vm_manager.shutdown(self.vm_id)
            with failure_boundary("undefine"):
                undefined = self.vm_manager.undefine(self.vm_id)
            with failure_boundary("remove_disk"):
                removed = _unlink_if_exists(self.identity.disk_image_path)
            self._transition(VmState.DESTROYED)
            logger.info(
                "vm cleaned up vm_id=%s stopped=%s undefined=%s disk_removed=%s",
                self.vm_id,
                stopped,
                undefined,
                removed,
            )
        return Outcome.SUCCESS


def build_lifecycle(
    settings: ExecutorSettings,
    vm_manager: LibvirtManager,
    remote_shell: SSHRemoteShell,
) -> JobLifecycle:
    identity = identity_for(settings.job_context(), settings.vm_images_dir)
    return JobLifecycle(settings, identity, vm_manager, remote_shell)
