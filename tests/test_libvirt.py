import subprocess
from pathlib import Path

import pytest

from libvirt_executor.config import ExecutorSettings
from libvirt_executor.errors import CommandError
from libvirt_executor.libvirt import LibvirtManager, parse_domifaddr, strip_cidr
from libvirt_executor.models import CreateOptions


class FakeRun:
    def __init__(self, *results):
        self.results = list(results)
        self.calls = []

    def __call__(self, cmd, **kwargs):
        self.calls.append(cmd)
        returncode, stdout, stderr = self.results.pop(0) if self.results else (0, "", "")
        return subprocess.CompletedProcess(cmd, returncode, stdout=stdout, stderr=stderr)


def _manager(tmp_path: Path, **overrides) -> LibvirtManager:
    settings = ExecutorSettings(
        base_images_dir="/var/lib/libvirt/images", vm_images_dir=str(tmp_path), **overrides
    )
    return LibvirtManager(settings)


def test_create_overlay_uses_base_image_as_backing_file(tmp_path, monkeypatch):
    fake = FakeRun((0, "", ""))
    monkeypatch.setattr(subprocess, "run", fake)
    disk = tmp_path / "runner-proj-1.qcow2"

    _manager(tmp_path).create_overlay("debian.qcow2", disk)

    assert fake.calls == [
        [
            "qemu-img",
            "create",
            "-f",
            "qcow2",
            "-F",
            "qcow2",
            "-b",
            "/var/lib/libvirt/images/debian.qcow2",
            str(disk),
        ]
    ]


def test_create_overlay_failure_raises_command_error(tmp_path, monkeypatch):
    monkeypatch.setattr(
        subprocess, "run", FakeRun((1, "", "Could not open backing file"))
    )
    with pytest.raises(CommandError, match="Could not open backing file"):
        _manager(tmp_path).create_overlay("missing.qcow2", tmp_path / "vm.qcow2")


def test_install_command_is_headless_and_non_interactive(tmp_path):
    cmd = _manager(tmp_path, os_variant="debian12").build_install_command(
        "runner-proj-1",
        tmp_path / "runner-proj-1.qcow2",
        CreateOptions(base_image="debian.qcow2", vcpu_count=2, ram_mb=2048, network_label="ci"),
    )
    assert cmd[:3] == ["virt-install", "--name", "runner-proj-1"]
    assert "--import" in cmd
    assert "--vcpus=2" in cmd
    assert "--ram=2048" in cmd
    assert cmd[cmd.index("--network") + 1] == "ci"
    assert cmd[cmd.index("--graphics") + 1] == "none"
    assert "--noautoconsole" in cmd
    assert cmd[-2:] == ["--osinfo", "debian12"]


def test_virsh_honours_connection_uri(tmp_path, monkeypatch):
    fake = FakeRun((0, "", ""))
    monkeypatch.setattr(subprocess, "run", fake)
    _manager(tmp_path, libvirt_uri="qemu:///system").undefine("runner-proj-1")
    assert fake.calls[0] == ["virsh", "--connect", "qemu:///system", "undefine", "runner-proj-1"]


def test_domain_address_strips_cidr(tmp_path, monkeypatch):
    output = " vnet3      52:54:00:6f:1a:22    ipv4         192.168.122.45/24\n"
    fake = FakeRun((0, output, ""))
    monkeypatch.setattr(subprocess, "run", fake)
    assert _manager(tmp_path).domain_address("runner-proj-1") == "192.168.122.45"
    assert fake.calls[0] == ["virsh", "-q", "domifaddr", "runner-proj-1"]


def test_domain_address_none_before_dhcp_lease(tmp_path, monkeypatch):
    monkeypatch.setattr(subprocess, "run", FakeRun((0, "", "")))
    assert _manager(tmp_path).domain_address("runner-proj-1") is None


def test_domain_address_with_source(tmp_path, monkeypatch):
    fake = FakeRun((0, "", ""))
    monkeypatch.setattr(subprocess, "run", fake)
    _manager(tmp_path, address_source="agent").domain_address("runner-proj-1")
    assert fake.calls[0][-2:] == ["--source", "agent"]


def test_domain_address_raises_when_virsh_fails(tmp_path, monkeypatch):
    monkeypatch.setattr(
        subprocess, "run", FakeRun((1, "", "error: failed to connect to the hypervisor"))
    )
    with pytest.raises(CommandError, match="failed to connect"):
        _manager(tmp_path).domain_address("runner-proj-1")


def test_domain_address_waits_for_guest_agent(tmp_path, monkeypatch):
    output = " eth0       52:54:00:6f:1a:22    ipv4         10.0.0.8/24\n"
    fake = FakeRun(
        (1, "", "error: Guest agent is not responding: QEMU guest agent is not connected"),
        (0, output, ""),
    )
    monkeypatch.setattr(subprocess, "run", fake)
    manager = _manager(tmp_path, address_source="agent")

    assert manager.domain_address("runner-proj-1") is None
    assert manager.domain_address("runner-proj-1") == "10.0.0.8"


def test_command_error_message_is_last_stderr_line():
    stderr = "WARNING  no --osinfo given\nERROR    Requested operation is not valid\n\n"
    exc = CommandError(action="virt-install", command=["virt-install"], returncode=1, stderr=stderr)
    assert str(exc) == "virt-install failed: ERROR    Requested operation is not valid"
    assert exc.stderr == stderr


def test_parse_domifaddr_prefers_ipv4_over_loopback_and_ipv6():
    output = "\n".join(
        [
            " lo         00:00:00:00:00:00    ipv4         127.0.0.1/8",
            " -          -                    ipv6         ::1/128",
            " eth0       52:54:00:6f:1a:22    ipv6         fe80::5054:ff:fe6f:1a22/64",
            " -          -                    ipv4         10.0.0.8/24",
        ]
    )
    assert parse_domifaddr(output) == "10.0.0.8"


def test_parse_domifaddr_falls_back_to_ipv6():
    output = " vnet0  52:54:00:6f:1a:22  ipv6  fd00::12/64\n"
    assert parse_domifaddr(output) == "fd00::12"


def test_strip_cidr():
    assert strip_cidr("192.168.122.45/24") == "192.168.122.45"
    assert strip_cidr("192.168.122.45/") == "192.168.122.45"
    assert strip_cidr("192.168.122.45") == "192.168.122.45"


def test_shutdown_and_undefine_tolerate_missing_domain(tmp_path, monkeypatch):
    missing = (1, "", "error: failed to get domain 'runner-proj-1'")
    monkeypatch.setattr(subprocess, "run", FakeRun(missing, missing))
    manager = _manager(tmp_path)
    assert manager.shutdown("runner-proj-1") is False
    assert manager.undefine("runner-proj-1") is False


def test_shutdown_tolerates_stopped_domain(tmp_path, monkeypatch):
    monkeypatch.setattr(
        subprocess,
        "run",
        FakeRun((1, "", "error: Requested operation is not valid: domain is not running")),
    )
    assert _manager(tmp_path).shutdown("runner-proj-1") is False


def test_shutdown_mode_destroy(tmp_path, monkeypatch):
    fake = FakeRun((0, "", ""))
    monkeypatch.setattr(subprocess, "run", fake)
    assert _manager(tmp_path, shutdown_mode="destroy").shutdown("runner-proj-1") is True
    assert fake.calls[0] == ["virsh", "destroy", "runner-proj-1"]


def test_undefine_other_errors_raise(tmp_path, monkeypatch):
    monkeypatch.setattr(
        subprocess, "run", FakeRun((1, "", "error: operation failed: permission denied"))
    )
    with pytest.raises(CommandError):
        _manager(tmp_path).undefine("runner-proj-1")
