"""Registry of the paths a run is allowed to manage."""

from pathlib import Path
from typing import Dict, Iterator, Tuple, Union


def host_path(root: Path, target: Union[str, Path]) -> Path:
    """Map an absolute host path below ``root``.

    With the default root of ``/`` this returns the target unchanged.
    """
    target = Path(target)
    if not target.is_absolute():
        raise ValueError(f"Target path must be absolute: {target}")
    return root.joinpath(*target.parts[1:])


class PathRegistry:
    """Physical paths owned by this run, each tagged with its subsystem."""

    def __init__(self, root: Path = Path("/")) -> None:
        self.root = root
        self._paths: Dict[Path, str] = {}

    def add(self, target: Union[str, Path], subsystem: str) -> Path:
        """Register a host path; the first subsystem to claim a path keeps it."""
        path = host_path(self.root, target)
        self._paths.setdefault(path, subsystem)
        return path

    def manages(self, path: Path) -> bool:
        return Path(path) in self._paths

    def subsystem_of(self, path: Path) -> str:
        return self._paths[Path(path)]

    def items(self) -> Iterator[Tuple[Path, str]]:
        return iter(self._paths.items())

    def __contains__(self, path: object) -> bool:
        return isinstance(path, (str, Path)) and Path(path) in self._paths

    def __len__(self) -> int:
        return len(self._paths)

    def __iter__(self) -> Iterator[Path]:
        return iter(self._paths)
