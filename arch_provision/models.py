# arch_provision/models.py

import hashlib
import json
import shlex
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Protocol, Tuple

from pydantic import BaseModel, ConfigDict, Field, SecretStr

# --- 1. Command Descriptors ---


class CommandSpec(BaseModel):
    """
    Describes one external command the engine wants to run.

    The engine never calls subprocess itself: it emits a CommandSpec and a
    runner executes it. Secrets travel through `stdin` and are never part of
    the rendered command line or the fingerprint.
    """
    model_config = ConfigDict(frozen=True)

    program: str = Field(min_length=1)
    args: Tuple[str, ...] = ()
    allowed_exit_codes: Tuple[int, ...] = (0,)
    chroot: bool = False
    stdin: Optional[SecretStr] = None
    timeout: Optional[float] = Field(None, gt=0)
    long_running: bool = False

    @classmethod
    def of(cls, program: str, *args: str, **kwargs) -> "CommandSpec":
        """Shorthand: CommandSpec.of("mkswap", "/dev/sda2")."""
        return cls(program=program, args=tuple(args), **kwargs)

    @property
    def argv(self) -> List[str]:
        return [self.program, *self.args]

    def display(self) -> str:
        """Shell-quoted command line for logs and error reports."""
        text = shlex.join(self.argv)
        if self.chroot:
            text = f"[chroot] {text}"
        if self.stdin is not None:
            text += " <<< '**********'"
        return text

    def fingerprint(self) -> str:
        """Stable hash of the intended effect (program, arguments, chroot)."""
        payload = json.dumps(
            {"program": self.program, "args": list(self.args), "chroot": self.chroot},
            sort_keys=True,
        )
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class CommandResult:
    """Exit code and captured output of a finished command."""
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def tail(self, lines: int = 20) -> str:
        """Last lines of combined output, used in failure reports."""
        combined = "\n".join(part.strip() for part in (self.stdout, self.stderr) if part and part.strip())
        return "\n".join(combined.splitlines()[-lines:])


class CommandRunner(Protocol):
    """The thin external runner the engine hands its command descriptors to."""

    def run(self, spec: CommandSpec, description: Optional[str] = None) -> CommandResult:
        ...

    def probe(self, spec: CommandSpec) -> CommandResult:
        ...


# --- 2. Steps and Stages ---


@dataclass(frozen=True)
class PostCondition:
    """A read-only check that a step's intended system state is present."""
    description: str
    probe: CommandSpec
    predicate: Callable[[CommandResult], bool]

    def evaluate(self, runner: CommandRunner) -> bool:
        return bool(self.predicate(runner.probe(self.probe)))


class StageState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class StepState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class Step:
    """One idempotent action: a command plus the post-condition proving it happened."""
    name: str
    command: CommandSpec
    check: Optional[PostCondition] = None
    irreversible: bool = False

    @property
    def key(self) -> str:
        """Idempotency key: hash of the step name and the command's intended effect."""
        digest = hashlib.sha256(f"{self.name}\0{self.command.fingerprint()}".encode("utf-8"))
        return digest.hexdigest()[:16]


@dataclass
class Stage:
    """A named, ordered group of steps with explicit dependencies on other stages."""
    name: str
    steps: List[Step] = field(default_factory=list)
    depends_on: Tuple[str, ...] = ()
    description: str = ""
    # Completed is re-verified on every run (e.g. mounts, which do not survive a reboot)
    volatile: bool = False

    @property
    def irreversible(self) -> bool:
        return any(step.irreversible for step in self.steps)


@dataclass
class StageOutcome:
    """What happened when a stage was run."""
    stage: str
    state: StageState
    executed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    already_completed: bool = False
    cancelled: bool = False
