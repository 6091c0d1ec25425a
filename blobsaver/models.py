# models.py
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

from blobsaver.errors import TSSCheckerError


@dataclass(frozen=True)
class SigningRequest:
    ecid: str
    save_path: str
    device_identifier: str
    device_name: str = ""
    board_config: Optional[str] = None
    apnonce: Optional[str] = None
    ipsw_url: Optional[str] = None
    build_id: Optional[str] = None
    # empty means "all currently signed versions"
    versions: Tuple[str, ...] = ()

    @property
    def uses_custom_board_config(self) -> bool:
        return bool(self.board_config)

    @property
    def uses_custom_apnonce(self) -> bool:
        return bool(self.apnonce)

    @property
    def uses_beta(self) -> bool:
        return bool(self.ipsw_url)

    @property
    def saving_all_signed_versions(self) -> bool:
        return not self.versions


class TaskState(Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class FailurePolicy(Enum):
    ABORT = "abort"
    CONTINUE = "continue"

    @classmethod
    def from_config(cls, value) -> "FailurePolicy":
        try:
            return cls(str(value or "abort").strip().lower())
        except ValueError:
            return cls.ABORT


@dataclass
class VersionResult:
    version: str
    success: bool
    error: Optional[TSSCheckerError] = None
    raw_output: str = ""


@dataclass
class SaveOutcome:
    """Aggregate result of one save task."""
    state: TaskState
    results: List[VersionResult] = field(default_factory=list)
    error: Optional[TSSCheckerError] = None

    @property
    def success(self) -> bool:
        return self.state is TaskState.SUCCEEDED

    @property
    def failed_versions(self) -> List[str]:
        return [r.version for r in self.results if not r.success]

    def __bool__(self):
        return self.success
