"""
Data models for benchmark trials and the containers they run.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


@dataclass(frozen=True)
class Mount:
    """A volume mount exposed to a container."""
    source: str
    target: str
    kind: str = "bind"


@dataclass(frozen=True)
class RunOptions:
    """Immutable options used to start a container."""
    image: str
    env: Tuple[str, ...] = ()
    cpuset_cpus: Optional[str] = None
    gpus: Optional[str] = None
    mounts: Tuple[Mount, ...] = ()
    links: Tuple[str, ...] = ()
    command: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Machine:
    """An isolated execution target able to host containers."""
    name: str
    docker_host: Optional[str] = None

    @property
    def is_local(self) -> bool:
        return self.docker_host is None


@dataclass(frozen=True)
class Container:
    """A container started on a machine."""
    name: str
    machine: Machine
    image: str


class TrialStatus(str, Enum):
    OK = "ok"
    ERROR = "error"
    SKIPPED = "skipped"
    FATAL = "fatal"


class RunStatus(str, Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    ABORTED = "aborted"
    INTERRUPTED = "interrupted"


@dataclass
class TrialResult:
    """Outcome of one server/client trial."""
    index: int
    status: TrialStatus
    started_at: datetime
    finished_at: Optional[datetime] = None
    measured_seconds: float = 0.0
    metrics: Optional[Any] = None
    reported: Dict[str, float] = field(default_factory=dict)
    error_type: Optional[str] = None
    error: Optional[str] = None
    output: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status == TrialStatus.OK


@dataclass
class BenchmarkRun:
    """Result of the repeated-trial loop."""
    run_id: Optional[str]
    status: RunStatus = RunStatus.COMPLETED
    trials: List[TrialResult] = field(default_factory=list)
    reported: Dict[str, float] = field(default_factory=dict)

    @property
    def failed_trials(self) -> List[TrialResult]:
        return [t for t in self.trials if t.status in (TrialStatus.ERROR, TrialStatus.FATAL)]
