"""Tests for in-place host file editors."""

from server_hardener.edits import EDITORS, secure_mount_options

FSTAB = """\
# /etc/fstab: static file system information.
UUID=1234 / ext4 errors=remount-ro 0 1
tmpfs\t/tmp\ttmpfs\tdefaults,size=2G\t0\t0
/dev/sdb1  /var/tmp  ext4  nodev  0  2
#tmpfs /tmp tmpfs defaults 0 0
"""


def test_temporary_mounts_gain_secure_options():
    edited = secure_mount_options(FSTAB).splitlines()

    assert edited[2] == "tmpfs\t/tmp\ttmpfs\tdefaults,size=2G,nodev,nosuid,noexec\t0\t0"
    assert edited[3] == "/dev/sdb1  /var/tmp  ext4  nodev,nosuid,noexec  0  2"


def test_other_lines_untouched():
    edited = secure_mount_options(FSTAB).splitlines()
    original = FSTAB.splitlines()

    assert edited[0] == original[0]
    assert edited[1] == original[1]
    assert edited[4] == original[4]


def test_editing_twice_changes_nothing():
    once = secure_mount_options(FSTAB)
    assert secure_mount_options(once) == once


def test_fstab_without_temporary_mounts():
    text = "UUID=1234 / ext4 defaults 0 1\n/dev/sda2 /home ext4 defaults 0 2"
    assert secure_mount_options(text) == text


def test_editor_registry():
    assert EDITORS["secure_mount_options"] is secure_mount_options
