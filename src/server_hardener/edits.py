"""In-place editors for host files that cannot be replaced by a template."""

from typing import Callable, Dict, List

TEMPORARY_MOUNTS = ("/tmp", "/var/tmp")
SECURE_MOUNT_OPTIONS = ("nodev", "nosuid", "noexec")


def secure_mount_options(text: str) -> str:
    """Add nodev, nosuid and noexec to the /tmp and /var/tmp fstab entries.

    Comments, other mounts and options already present are left alone, so
    editing an already secured fstab returns it unchanged.
    """
    lines: List[str] = []
    for line in text.splitlines(keepends=True):
        body = line.rstrip("\n")
        fields = body.split()
        if len(fields) < 4 or fields[0].startswith("#") or fields[1] not in TEMPORARY_MOUNTS:
            lines.append(line)
            continue

        options = fields[3].split(",")
        added = [option for option in SECURE_MOUNT_OPTIONS if option not in options]
        if not added:
            lines.append(line)
            continue

        # Rewrite only the options column, keeping the original spacing
        start = _field_offset(body, 3)
        end = start + len(fields[3])
        new_options = ",".join(options + added)
        lines.append(body[:start] + new_options + body[end:] + line[len(body):])

    return "".join(lines)


def _field_offset(line: str, index: int) -> int:
    position = 0
    for _ in range(index):
        while line[position].isspace():
            position += 1
        while not line[position].isspace():
            position += 1
    while line[position].isspace():
        position += 1
    return position


EDITORS: Dict[str, Callable[[str], str]] = {
    "secure_mount_options": secure_mount_options,
}
