from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from .config import BACKUP_SUFFIX


class Stage(str, Enum):
    """Success path of a claim migration, in execution order."""
    INIT = "Init"
    BACKUP_PROVISIONED = "BackupProvisioned"
    DATA_COPIED_TO_BACKUP = "DataCopiedToBackup"
    WORKLOADS_PAUSED = "WorkloadsPaused"
    ORIGINAL_VOLUME_RELEASED = "OriginalVolumeReleased"
    WORKLOADS_RESUMED = "WorkloadsResumed"
    REPLACEMENT_VOLUME_BOUND = "ReplacementVolumeBound"
    DATA_RESTORED = "DataRestored"

    @property
    def index(self) -> int:
        return list(Stage).index(self)

    @property
    def previous(self) -> Optional["Stage"]:
        if self is Stage.INIT:
            return None
        return list(Stage)[self.index - 1]

    @property
    def next(self) -> Optional["Stage"]:
        members = list(Stage)
        if self.index + 1 >= len(members):
            return None
        return members[self.index + 1]

    def failure_label(self) -> str:
        return f"Failed@{self.value}"


FINAL_STAGE = Stage.DATA_RESTORED


@dataclass
class MigrationItem:
    """One claim being moved off the draining node.

    ``stage`` is the last stage reached, or the stage that was attempted when
    ``failed`` is set.
    """
    namespace: str
    name: str
    claim: Any = field(default=None, repr=False, compare=False)
    stage: Stage = Stage.INIT
    failed: bool = False

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def backup_name(self) -> str:
        return f"{self.name}{BACKUP_SUFFIX}"

    @property
    def label(self) -> str:
        return self.stage.failure_label() if self.failed else self.stage.value

    @property
    def terminal(self) -> bool:
        return self.failed or self.stage is FINAL_STAGE

    def is_ready_for(self, stage: Stage) -> bool:
        return not self.failed and self.stage is stage.previous

    def advance(self, stage: Stage):
        if not self.is_ready_for(stage):
            raise ValueError(f"{self.key} cannot move from {self.label} to {stage.value}")
        self.stage = stage

    def fail(self, stage: Stage):
        if self.failed:
            return
        self.stage = stage
        self.failed = True
