# arch_provision/progress.py

import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from arch_provision.models import StageState, StepState

PROGRESS_FORMAT_VERSION = 1
DEFAULT_STATE_DIR = "/var/lib/arch-provision"
PROGRESS_FILE_NAME = "progress.json"


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


# --- 1. Persisted Models ---
# Unknown fields are ignored so older and newer engines can read each other's files.

class ErrorRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    kind: str
    message: str
    step: Optional[str] = None
    command: Optional[str] = None
    output: str = ""


class StageRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    state: StageState = StageState.PENDING
    timestamp: str = Field(default_factory=utcnow)
    last_error: Optional[ErrorRecord] = None
    steps: Dict[str, StepState] = Field(default_factory=dict)


class ProgressRecord(BaseModel):
    """Per-stage lifecycle state of one plan, keyed by stage name."""
    model_config = ConfigDict(extra="ignore")

    version: int = PROGRESS_FORMAT_VERSION
    plan_hash: Optional[str] = None
    stages: Dict[str, StageRecord] = Field(default_factory=dict)

    def state_of(self, stage: str) -> StageState:
        record = self.stages.get(stage)
        return record.state if record else StageState.PENDING

    def set_state(self, stage: str, state: StageState, error: Optional[ErrorRecord] = None) -> StageRecord:
        record = self.stages.setdefault(stage, StageRecord())
        record.state = state
        record.timestamp = utcnow()
        record.last_error = error
        return record

    def set_step(self, stage: str, step_key: str, state: StepState) -> None:
        record = self.stages.setdefault(stage, StageRecord())
        record.steps[step_key] = state

    @property
    def empty(self) -> bool:
        return not self.stages


# --- 2. Store ---

class ProgressStore:
    """
    Loads and saves the ProgressRecord at a fixed path.

    Writes go to a temporary file in the same directory that is then renamed
    over the record, so a crash leaves either the old or the new record.
    """

    def __init__(self, state_dir: str = DEFAULT_STATE_DIR, file_name: str = PROGRESS_FILE_NAME):
        self.path = Path(state_dir) / file_name

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> ProgressRecord:
        if not self.path.exists():
            return ProgressRecord()
        try:
            return ProgressRecord.model_validate_json(self.path.read_text(encoding="utf-8"))
        except ValidationError as e:
            raise ValueError(f"Progress file {self.path} is corrupt: {e}") from e

    def save(self, record: ProgressRecord) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".progress-", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(record.model_dump_json(indent=2) + "\n")
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def destroy(self) -> None:
        if self.path.exists():
            self.path.unlink()
