import logging
import re
import subprocess
from pathlib import Path

from libvirt_executor.config import ExecutorSettings
from libvirt_executor.errors import CommandError
from libvirt_executor.models import CreateOptions


logger = logging.getLogger(__name__)

_CIDR_SUFFIX = re.compile(r"/\d*$")

MISSING_DOMAIN_MARKERS = (
    "domain not found",
    "failed to get domain",
    "no domain with matching name",
    "domain does not exist",
)
NOT_RUNNING_MARKERS = ("domain is not running",)
AGENT_NOT_READY_MARKERS = (
    "guest agent is not responding",
    "guest agent is not connected",
    "guest agent not available",
)


def looks_like_missing_domain(stderr: str) -> bool:
    lowered = stderr.lower()
    return any(marker in lowered for marker in MISSING_DOMAIN_MARKERS)


def looks_like_not_running(stderr: str) -> bool:
    lowered = stderr.lower()
    return any(marker in lowered for marker in NOT_RUNNING_MARKERS)


def looks_like_agent_not_ready(stderr: str) -> bool:
    lowered = stderr.lower()
    return any(marker in lowered for marker in AGENT_NOT_READY_MARKERS)


def strip_cidr(address: str) -> str:
    return _CIDR_SUFFIX.sub("", address.strip())


def parse_domifaddr(output: str) -> str | None:
    """Pick the guest address out of ``virsh -q domifaddr`` output.

    Rows look like ``vnet0  52:54:00:12:34:56  ipv4  192.168.122.45/24``.
    The first non-loopback IPv4 address wins, then any non-loopback address.
    """
    candidates: list[tuple[str, str]] = []
    for raw_line in output.splitlines():
        fields = raw_line.split()
        if len(fields) < 4:
            continue
        protocol, address = fields[2].lower(), strip_cidr(fields[3])
        if not address or address.startswith("127.") or address == "::1":
            continue
        candidates.append((protocol, address))
    for protocol, address in candidates:
        if protocol == "ipv4":
            return address
    return candidates[0][1] if candidates else None


class LibvirtManager:
    """Thin adapter over qemu-img, virt-install and virsh."""

    def __init__(self, settings: ExecutorSettings):
        self.settings = settings

    def _run(self, cmd: list[str]) -> subprocess.CompletedProcess:
        logger.debug("running command=%s", " ".join(cmd))
        return subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            check=False,
            timeout=self.settings.command_timeout_sec,
        )

    def _connect_args(self) -> list[str]:
        if self.settings.libvirt_uri:
            return ["--connect", self.settings.libvirt_uri]
        return []

    def _virsh(self, *args: str) -> subprocess.CompletedProcess:
        return self._run([self.settings.virsh_binary, *self._connect_args(), *args])

    def base_image_path(self, base_image: str) -> Path:
        return Path(self.settings.base_images_dir) / base_image

    def create_overlay(self, base_image: str, disk_image_path: Path) -> None:
        Path(disk_image_path).parent.mkdir(parents=True, exist_ok=True)
        cmd = [
            self.settings.qemu_img_binary,
            "create",
            "-f",
            "qcow2",
            "-F",
            "qcow2",
            "-b",
            str(self.base_image_path(base_image)),
            str(disk_image_path),
        ]
        completed = self._run(cmd)
        if completed.returncode != 0:
            raise CommandError(
                action="qemu-img overlay creation",
                command=cmd,
                returncode=completed.returncode,
                stderr=completed.stderr or completed.stdout or "",
            )

    def build_install_command(
        self, vm_id: str, disk_image_path: Path, options: CreateOptions
    ) -> list[str]:
        cmd = [
            self.settings.virt_install_binary,
            *self._connect_args(),
            "--name",
            vm_id,
            "--disk",
            str(disk_image_path),
            "--import",
            f"--vcpus={options.vcpu_count}",
            f"--ram={options.ram_mb}",
            "--network",
            options.network_label,
            "--graphics",
            "none",
            "--noautoconsole",
        ]
        if self.settings.os_variant:
            cmd.extend(["--osinfo", self.settings.os_variant])
        return cmd

    def install(self, vm_id: str, disk_image_path: Path, options: CreateOptions) -> None:
        cmd = self.build_install_command(vm_id, disk_image_path, options)
        completed = self._run(cmd)
        if completed.returncode != 0:
            raise CommandError(
                action="virt-install",
                command=cmd,
                returncode=completed.returncode,
                stderr=completed.stderr or completed.stdout or "",
            )

    def domain_address(self, vm_id: str) -> str | None:
        args = ["-q", "domifaddr", vm_id]
        if self.settings.address_source:
            args.extend(["--source", self.settings.address_source])
        completed = self._virsh(*args)
        if completed.returncode != 0:
            if looks_like_agent_not_ready(completed.stderr or ""):
                logger.debug("guest agent not ready vm_id=%s", vm_id)
                return None
            raise CommandError(
                action="virsh domifaddr",
                command=[self.settings.virsh_binary, *args],
                returncode=completed.returncode,
                stderr=completed.stderr or "",
            )
        return parse_domifaddr(completed.stdout or "")

    def shutdown(self, vm_id: str) -> bool:
        """Stop the domain. Returns False when it was already absent or stopped."""
        verb = self.settings.shutdown_mode
        completed = self._virsh(verb, vm_id)
        if completed.returncode == 0:
            return True
        stderr = completed.stderr or ""
        if looks_like_missing_domain(stderr) or looks_like_not_running(stderr):
            logger.info("vm already stopped vm_id=%s", vm_id)
            return False
        raise CommandError(
            action=f"virsh {verb}",
            command=[self.settings.virsh_binary, verb, vm_id],
            returncode=completed.returncode,
            stderr=stderr,
        )

    def undefine(self, vm_id: str) -> bool:
        """Remove the domain definition. Returns False when it was already gone."""
        completed = self._virsh("undefine", vm_id)
        if completed.returncode == 0:
            return True
        stderr = completed.stderr or ""
        if looks_like_missing_domain(stderr):
            logger.info("vm already undefined vm_id=%s", vm_id)
            return False
        raise CommandError(
            action="virsh undefine",
            command=[self.settings.virsh_binary, "undefine", vm_id],
            returncode=completed.returncode,
            stderr=stderr,
        )
