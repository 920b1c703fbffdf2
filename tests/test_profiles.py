"""Tests for the profile catalog and layering controller."""

from server_hardener.profiles import CATALOG, build_registry, resolve
from server_hardener.subsystems import INTRUSION, KERNEL, PACKET_FILTER
from server_hardener.types import OutcomeStatus, SecurityProfile, ServerType, SetupMode


def _names(groups):
    return [group.name for group in groups]


def _groups(*names):
    by_name = {group.name: group for group in CATALOG}
    return [by_name[name] for name in names]


def test_profiles_are_cumulative():
    minimal = set(_names(resolve(SecurityProfile.MINIMAL)))
    standard = set(_names(resolve(SecurityProfile.STANDARD)))
    hardened = set(_names(resolve(SecurityProfile.HARDENED)))

    assert minimal < standard < hardened
    assert "kernel-hardened" in hardened - standard
    assert "unattended-upgrades" in standard - minimal


def test_resolve_orders_by_tier():
    groups = resolve(SecurityProfile.HARDENED, server_type=ServerType.DOCKER)
    ranks = [group.tier.rank for group in groups]
    assert ranks == sorted(ranks)
    assert _names(groups).index("kernel-minimal") < _names(groups).index("kernel-standard")


def test_mode_filter():
    system = _names(resolve(SecurityProfile.HARDENED, SetupMode.SYSTEM))
    ssh = _names(resolve(SecurityProfile.HARDENED, SetupMode.SSH))

    assert "ssh-server" not in system
    assert "fail2ban-advanced" not in system
    assert "kernel-hardened" in system
    assert "ssh-server" in ssh
    assert "kernel-minimal" in ssh


def test_server_type_filter():
    bare = _names(resolve(SecurityProfile.HARDENED))
    docker = _names(resolve(SecurityProfile.HARDENED, server_type=ServerType.DOCKER))
    web = _names(resolve(SecurityProfile.HARDENED, server_type=ServerType.WEB))

    assert "docker-daemon" not in bare and "nginx-security" not in bare
    assert {"docker-daemon", "apparmor-docker"} <= set(docker)
    assert {"nginx-security", "apparmor-nginx"} <= set(web)
    assert "apparmor-docker" not in web


def test_sftp_drop_in_is_conditional():
    def ssh_targets(enable):
        groups = resolve(SecurityProfile.MINIMAL, variables={"ENABLE_SFTP": enable})
        ssh = next(g for g in groups if g.name == "ssh-server")
        return [item.target for item in ssh.items]

    assert "/etc/ssh/sshd_config.d/02-sftp.conf" not in ssh_targets("no")
    assert "/etc/ssh/sshd_config.d/02-sftp.conf" in ssh_targets("yes")


def test_build_registry(tmp_path):
    registry = build_registry(_groups("kernel-minimal"), tmp_path, [("/etc/extra", "x")])
    assert registry.manages(tmp_path / "etc" / "sysctl.d" / "20-security-minimal.conf")
    assert registry.subsystem_of(tmp_path / "etc" / "extra") == "x"
    assert len(registry) == 2


def test_apply_commits_groups(controller, context_factory, executor, fake_root):
    groups = _groups("kernel-minimal", "limits-core", "fail2ban-basic")
    context = context_factory(groups)

    outcomes = controller.apply(groups, context)

    group_outcomes = [o for o in outcomes if o.item is None]
    assert [o.status for o in group_outcomes] == [OutcomeStatus.COMMITTED] * 3
    assert (fake_root / "etc" / "sysctl.d" / "20-security-minimal.conf").is_file()
    jail = (fake_root / "etc" / "fail2ban" / "jail.d" / "ssh-basic.conf").read_text()
    assert "port     = 22" in jail
    assert executor.ran("sysctl", "-p")
    assert executor.ran("systemctl", "restart", "fail2ban")


def test_validation_precedes_activation(controller, context_factory, executor):
    groups = _groups("fail2ban-basic")
    controller.apply(groups, context_factory(groups))
    assert executor.index("fail2ban-client", "-t") < executor.index(
        "systemctl", "restart", "fail2ban"
    )


def test_validation_failure_unstages_and_stops(controller, context_factory, executor, fake_root):
    """Test a rejected group is put back and later groups never start."""
    groups = _groups("kernel-minimal", "fail2ban-basic", "kernel-standard")
    executor.respond(["fail2ban-client", "-t"], success=False, stderr="ERROR: bad jail")
    context = context_factory(groups)

    controller.apply(groups, context)

    failed = context.failures
    assert len(failed) == 1
    assert failed[0].group == "fail2ban-basic"
    assert "bad jail" in failed[0].detail
    assert not (fake_root / "etc" / "fail2ban" / "jail.d" / "ssh-basic.conf").exists()
    assert not executor.ran("systemctl", "restart", "fail2ban")
    # Earlier groups stay committed, later ones are not attempted
    assert (fake_root / "etc" / "sysctl.d" / "20-security-minimal.conf").exists()
    assert not (fake_root / "etc" / "sysctl.d" / "21-security-standard.conf").exists()
    assert "kernel-standard" not in {o.group for o in context.results}


def test_unknown_kernel_parameter_fails_validation(controller, context_factory, fake_root):
    groups = _groups("kernel-minimal")
    (fake_root / "proc" / "sys" / "net" / "ipv4" / "tcp_syncookies").unlink()
    context = context_factory(groups)

    controller.apply(groups, context)

    assert context.failures[0].group == "kernel-minimal"
    assert "net.ipv4.tcp_syncookies" in context.failures[0].detail


def test_missing_validator_binary_fails(controller, context_factory, executor):
    groups = _groups("fail2ban-basic")
    executor.missing.add("fail2ban-client")
    context = context_factory(groups)

    controller.apply(groups, context)

    assert "fail2ban-client not found" in context.failures[0].detail
    assert not executor.ran("systemctl", "restart", "fail2ban")


def test_missing_variable_installs_nothing(controller, context_factory, fake_root):
    groups = _groups("fail2ban-basic")
    context = context_factory(groups, variables={"SSH_PORT": "22"})

    controller.apply(groups, context)

    assert "FAIL2BAN_BANTIME" in context.failures[0].detail
    assert not (fake_root / "etc" / "fail2ban").exists()


def test_install_requires_snapshot(controller, context_factory, fake_root):
    groups = _groups("kernel-minimal")
    context = context_factory(groups, snapshot=False)

    controller.apply(groups, context)

    assert "snapshot" in context.failures[0].detail
    assert not (fake_root / "etc" / "sysctl.d").exists()


def test_apply_is_idempotent(controller, context_factory, fake_root):
    groups = _groups("kernel-minimal", "limits-core", "fail2ban-basic")
    targets = [fake_root / item.target.lstrip("/") for g in groups for item in g.items]

    controller.apply(groups, context_factory(groups))
    first = [path.read_bytes() for path in targets]
    controller.apply(groups, context_factory(groups))

    assert [path.read_bytes() for path in targets] == first


def test_dry_run_plans_only(controller, context_factory, executor, fake_root):
    groups = _groups("kernel-minimal", "fail2ban-basic")
    context = context_factory(groups, dry_run=True)

    outcomes = controller.apply(groups, context)

    assert {o.status for o in outcomes} == {OutcomeStatus.PLANNED}
    assert not (fake_root / "etc" / "sysctl.d").exists()
    assert executor.calls == []


def test_intrusion_restart_deferred_when_remote(controller, context_factory, executor, capsys):
    groups = _groups("fail2ban-basic")
    context = context_factory(groups, hazard=True)

    outcomes = controller.apply(groups, context)

    assert outcomes[-1].status == OutcomeStatus.DEFERRED
    assert "systemctl restart fail2ban" in outcomes[-1].detail
    assert executor.ran("fail2ban-client", "-t")
    assert not executor.ran("systemctl", "restart", "fail2ban")
    assert "not activated" in capsys.readouterr().out


def test_activation_failure_is_recorded(controller, context_factory, executor):
    groups = _groups("kernel-minimal", "kernel-standard")
    executor.respond(["sysctl", "-p"], success=False, stderr="permission denied")
    context = context_factory(groups)

    controller.apply(groups, context)

    assert context.failures[0].group == "kernel-minimal"
    assert "kernel-standard" not in {o.group for o in context.results}


def test_catalog_subsystems_exist():
    from server_hardener.subsystems import default_subsystems

    subsystems = default_subsystems()
    assert all(group.subsystem in subsystems for group in CATALOG)
    assert subsystems[KERNEL].restart_order < subsystems[INTRUSION].restart_order


def test_command_groups_follow_mode():
    ssh = _names(resolve(SecurityProfile.STANDARD, SetupMode.SSH))
    system = _names(resolve(SecurityProfile.STANDARD, SetupMode.SYSTEM))

    assert "firewall-basic" in ssh
    assert "firewall-basic" not in system
    assert "process-accounting" in system


def test_build_registry_includes_state_paths(tmp_path):
    registry = build_registry(_groups("firewall-basic"), tmp_path)

    assert registry.subsystem_of(tmp_path / "etc" / "ufw" / "user.rules") == PACKET_FILTER
    assert len(registry) == 4


def test_firewall_group_runs_rendered_commands(controller, context_factory, executor):
    groups = _groups("firewall-basic")
    context = context_factory(groups, ssh_port=2222)

    outcomes = controller.apply(groups, context)

    assert outcomes[-1].status == OutcomeStatus.COMMITTED
    assert executor.ran("ufw", "limit", "2222/tcp")
    assert executor.index("ufw", "default", "deny", "incoming") < executor.index(
        "ufw", "--force", "enable"
    )
    assert not executor.ran("ufw", "--force", "reset")


def test_firewall_group_deferred_when_remote(controller, context_factory, executor):
    groups = _groups("firewall-basic")
    context = context_factory(groups, hazard=True)

    outcomes = controller.apply(groups, context)

    assert outcomes[-1].status == OutcomeStatus.DEFERRED
    assert "ufw limit 22/tcp" in outcomes[-1].detail
    assert not executor.ran("ufw")


def test_firewall_group_needs_port_variable(controller, context_factory, executor):
    groups = _groups("firewall-basic")
    context = context_factory(groups, variables={})

    controller.apply(groups, context)

    assert "SSH_PORT" in context.failures[0].detail
    assert not executor.ran("ufw")


def test_accounting_group_starts_service(controller, context_factory, executor):
    groups = _groups("process-accounting")

    outcomes = controller.apply(groups, context_factory(groups))

    assert outcomes[-1].status == OutcomeStatus.COMMITTED
    assert executor.index("systemctl", "enable", "acct") < executor.index(
        "systemctl", "start", "acct"
    )


def test_secure_mounts_without_fstab(controller, context_factory, fake_root):
    groups = _groups("secure-mounts")

    outcomes = controller.apply(groups, context_factory(groups))

    assert [o.status for o in outcomes] == [OutcomeStatus.COMMITTED]
    assert not (fake_root / "etc" / "fstab").exists()


def test_secure_mounts_leaves_secured_fstab(controller, context_factory, fake_root):
    fstab = fake_root / "etc" / "fstab"
    fstab.write_text("tmpfs /tmp tmpfs defaults,nodev,nosuid,noexec 0 0\n")
    groups = _groups("secure-mounts")

    outcomes = controller.apply(groups, context_factory(groups))

    assert OutcomeStatus.INSTALLED not in {o.status for o in outcomes}


def test_rejected_fstab_is_put_back(controller, context_factory, executor, fake_root):
    fstab = fake_root / "etc" / "fstab"
    fstab.write_text("/dev/sdb1 /var/tmp ext4 defaults 0 2\n")
    executor.respond(["findmnt", "--verify"], success=False, stderr="parse error at line 1")
    groups = _groups("secure-mounts")
    context = context_factory(groups)

    controller.apply(groups, context)

    assert "parse error" in context.failures[0].detail
    assert fstab.read_text() == "/dev/sdb1 /var/tmp ext4 defaults 0 2\n"
