"""Tests for system info module."""

import pytest

from conftest import FakeExecutor
from server_hardener.system_info import SystemInfo
from server_hardener.types import FirewallType, InitSystem


def _write_stat(proc, pid, comm, ppid):
    entry = proc / str(pid)
    entry.mkdir(parents=True)
    (entry / "stat").write_text(f"{pid} ({comm}) S {ppid} {pid} {pid} 0 -1 4194560\n")


@pytest.fixture
def etc_root(tmp_path):
    etc = tmp_path / "etc"
    etc.mkdir()
    (etc / "os-release").write_text('NAME="Debian GNU/Linux"\nID=debian\nVERSION_ID="12"\n')
    return etc


def _system(executor, etc_root, tmp_path, environ=None):
    return SystemInfo(
        executor=executor,
        environ=environ or {},
        proc_root=tmp_path / "proc",
        etc_root=etc_root,
    )


def test_system_info_initialization(executor, etc_root, tmp_path):
    """Test system info detection."""
    executor.respond(["systemd-detect-virt"], stdout="kvm\n")
    system = _system(executor, etc_root, tmp_path)

    assert system.distro == "debian"
    assert system.init_system == InitSystem.SYSTEMD
    assert system.firewall_type == FirewallType.NONE
    assert system.virtualization == "kvm"
    assert isinstance(system.is_root, bool)


def test_detects_active_ufw(executor, etc_root, tmp_path):
    executor.respond(["ufw", "status"], stdout="Status: active\n")
    assert _system(executor, etc_root, tmp_path).firewall_type == FirewallType.UFW


def test_inactive_ufw_is_no_firewall(executor, etc_root, tmp_path):
    executor.respond(["ufw", "status"], stdout="Status: inactive\n")
    executor.respond(["firewall-cmd", "--state"], success=False, stdout="not running\n")
    assert _system(executor, etc_root, tmp_path).firewall_type == FirewallType.NONE


def test_remote_session_from_environment(executor, etc_root, tmp_path):
    system = _system(executor, etc_root, tmp_path, {"SSH_CONNECTION": "10.0.0.2 5000 10.0.0.1 22"})
    assert system.is_remote_session()


def test_remote_session_from_process_ancestry(executor, etc_root, tmp_path):
    """Test detection survives sudo stripping the SSH_* variables."""
    proc = tmp_path / "proc"
    _write_stat(proc, 300, "sudo", 200)
    _write_stat(proc, 200, "bash", 100)
    _write_stat(proc, 100, "sshd-session", 1)
    system = _system(executor, etc_root, tmp_path)

    assert system._ancestor_names(300) == ["sudo", "bash", "sshd-session"]
    assert any(name in ("sshd", "sshd-session") for name in system._ancestor_names(300))


def test_local_session(executor, etc_root, tmp_path, monkeypatch):
    proc = tmp_path / "proc"
    _write_stat(proc, 300, "sudo", 200)
    _write_stat(proc, 200, "login", 1)
    monkeypatch.setattr("server_hardener.system_info.os.getppid", lambda: 300)

    assert not _system(executor, etc_root, tmp_path).is_remote_session()


def test_read_stat_handles_odd_command_names(executor, etc_root, tmp_path):
    proc = tmp_path / "proc"
    _write_stat(proc, 42, "tmux: server (1)", 7)
    assert _system(executor, etc_root, tmp_path)._read_stat(42) == ("tmux: server (1)", 7)


def test_service_commands_per_init_system(executor, etc_root, tmp_path):
    system = _system(executor, etc_root, tmp_path)
    assert system.get_service_command("ssh", "restart") == ["systemctl", "restart", "ssh"]

    system.init_system = InitSystem.OPENRC
    assert system.get_service_command("sshd", "enable") == ["rc-update", "add", "sshd"]
    assert system.get_service_command("sshd", "is-active") == ["rc-service", "sshd", "status"]

    system.init_system = InitSystem.SYSVINIT
    assert system.get_service_command("ssh", "restart") == ["service", "ssh", "restart"]

    system.init_system = InitSystem.UNKNOWN
    assert system.get_service_command("ssh", "restart") == []


def test_unknown_init_system_is_a_requirement_issue(etc_root, tmp_path):
    executor = FakeExecutor()
    for command in (["systemctl"], ["rc-service"], ["service"]):
        executor.respond(command, success=False)
    system = _system(executor, etc_root, tmp_path)

    assert system.init_system == InitSystem.UNKNOWN
    assert "Cannot detect init system" in system.check_requirements(dry_run=True)


def test_to_dict(executor, etc_root, tmp_path):
    info = _system(executor, etc_root, tmp_path).to_dict()
    assert info["distro"] == "debian"
    assert info["init_system"] == "systemd"
    assert info["virtualization"] == "none"


def test_container_from_virtualization(executor, etc_root, tmp_path):
    executor.respond(["systemd-detect-virt"], stdout="docker\n")
    assert _system(executor, etc_root, tmp_path).is_container()


def test_container_from_init_environment(executor, etc_root, tmp_path):
    init = tmp_path / "proc" / "1"
    init.mkdir(parents=True)
    (init / "environ").write_bytes(b"PATH=/usr/bin\0container=lxc\0")

    assert _system(executor, etc_root, tmp_path).is_container()


def test_virtual_machine_is_not_a_container(executor, etc_root, tmp_path):
    executor.respond(["systemd-detect-virt"], stdout="kvm\n")
    assert not _system(executor, etc_root, tmp_path).is_container()


def test_debian_family(executor, etc_root, tmp_path):
    assert _system(executor, etc_root, tmp_path).is_debian_family()

    (etc_root / "os-release").write_text('NAME="Fedora Linux"\nID=fedora\n')
    assert not _system(executor, etc_root, tmp_path).is_debian_family()


def test_free_space_of_missing_directory(executor, etc_root, tmp_path):
    system = _system(executor, etc_root, tmp_path)
    assert system.free_space(tmp_path / "not" / "created" / "yet") > 0
