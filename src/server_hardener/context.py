"""State threaded through one run."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union

from server_hardener.registry import PathRegistry, host_path
from server_hardener.snapshot import Snapshot
from server_hardener.types import (
    Outcome,
    OutcomeStatus,
    SecurityProfile,
    ServerType,
    SetupMode,
)


@dataclass
class RunContext:
    """Mutable state of a single invocation.

    ``self_lockout_hazard`` and ``current_ssh_port`` are computed once when
    the context is built and never re-queried during the run.
    """

    profile: SecurityProfile
    ssh_port: int
    mode: SetupMode = SetupMode.BOTH
    server_type: ServerType = ServerType.BARE
    current_ssh_port: int = 22
    dry_run: bool = False
    is_root: bool = False
    self_lockout_hazard: bool = False
    root: Path = Path("/")
    variables: Dict[str, str] = field(default_factory=dict)
    registry: PathRegistry = field(default_factory=PathRegistry)
    snapshot: Optional[Snapshot] = None
    results: List[Outcome] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.registry and self.registry.root != self.root:
            self.registry = PathRegistry(self.root)

    @property
    def port_changed(self) -> bool:
        return self.ssh_port != self.current_ssh_port

    def host_path(self, target: Union[str, Path]) -> Path:
        return host_path(self.root, target)

    def record(self, outcome: Outcome) -> Outcome:
        self.results.append(outcome)
        return outcome

    @property
    def failures(self) -> List[Outcome]:
        return [o for o in self.results if o.status == OutcomeStatus.FAILED]

    @property
    def restore_script(self) -> Optional[Path]:
        if self.snapshot is None:
            return None
        return self.snapshot.restore_script
