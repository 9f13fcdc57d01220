# arch_provision/utils/exceptions.py

from typing import List, Optional, Sequence


# --- 1. Shell Command Errors (raised by the command runner) ---

class ShellCommandError(Exception):
    """Base exception for errors during shell command execution."""
    def __init__(self, command: str, exit_code: int = -1, stdout: str = "", stderr: str = "", message: str = "Shell command failed"):
        self.command = command
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        self.message = message
        super().__init__(f"{self.message} (Command: '{self.command}', Exit Code: {self.exit_code})")

class CommandNotFoundError(ShellCommandError):
    """Exception raised when the command itself is not found."""
    def __init__(self, command: str, stdout: str = "", stderr: str = ""):
        super().__init__(command, 127, stdout, stderr, "Command not found")

class CommandTimeoutError(ShellCommandError):
    """Exception raised when a shell command times out."""
    def __init__(self, command: str, timeout: float, stdout: str = "", stderr: str = ""):
        self.timeout = timeout
        super().__init__(command, 124, stdout, stderr, f"Command timed out after {timeout} seconds")

class InvalidCommandError(ShellCommandError):
    """Exception raised for invalid or malformed commands."""
    def __init__(self, command: str, message: str = "Invalid command format"):
        super().__init__(command, -2, "", "", message)

class PermissionDeniedError(ShellCommandError):
    """Exception raised when a shell command encounters a permission denied error."""
    def __init__(self, command: str, stdout: str = "", stderr: str = ""):
        super().__init__(command, 126, stdout, stderr, "Permission denied")


# --- 2. Configuration Errors ---

class ConfigError(Exception):
    """Raised when the installer configuration cannot be read or validated."""


# --- 3. Plan Errors (bad layout, raised before any device is touched) ---

class PlanError(Exception):
    """Base class for disk plan validation failures."""

class OverlapError(PlanError):
    """Two partitions claim the same range of the disk."""

class NotContiguousError(PlanError):
    """A gap between partitions, or a partition starting before the alignment boundary."""

class InsufficientSpaceError(PlanError):
    """The layout does not fit on the disk or the root partition is too small."""

class MissingESPError(PlanError):
    """UEFI mode was selected but no EFI System Partition is planned."""

class DuplicateESPError(PlanError):
    """More than one EFI System Partition is planned."""

class MissingRootError(PlanError):
    """The layout has no root partition, or more than one."""


# --- 4. Graph Errors (structural, raised before execution) ---

class GraphError(Exception):
    """Base class for stage graph failures."""

class CycleError(GraphError):
    """The stage dependencies contain a cycle."""
    def __init__(self, cycle: Sequence[str]):
        self.cycle: List[str] = list(cycle)
        super().__init__(f"Dependency cycle between stages: {' -> '.join(self.cycle)}")

class UnknownDependencyError(GraphError):
    """A stage depends on a stage that is not part of the graph."""
    def __init__(self, stage: str, dependency: str):
        self.stage = stage
        self.dependency = dependency
        super().__init__(f"Stage '{stage}' depends on unknown stage '{dependency}'")

class DuplicateStageError(GraphError):
    """Two stages share the same name."""
    def __init__(self, stage: str):
        self.stage = stage
        super().__init__(f"Stage '{stage}' is defined more than once")


# --- 5. Execution Errors (raised by the StepExecutor) ---

class ExecError(Exception):
    """
    Base class for failures while executing stages.

    Carries enough context for the CLI to report the failing stage, step,
    last command and captured output.
    """
    def __init__(self, message: str, stage: Optional[str] = None, step: Optional[str] = None,
                 command: Optional[str] = None, output: str = ""):
        self.stage = stage
        self.step = step
        self.command = command
        self.output = output
        super().__init__(message)

class ConfirmationRequiredError(ExecError):
    """An irreversible stage was reached without a token for this exact plan."""

class CommandFailedError(ExecError):
    """An external command exited with a code it was not allowed to return."""
    def __init__(self, message: str, exit_code: int, **kwargs):
        self.exit_code = exit_code
        super().__init__(message, **kwargs)

class VerificationFailedError(ExecError):
    """The post-condition of a step did not hold after its command succeeded."""

class StageFailedError(ExecError):
    """A stage recorded as Failed was entered without being re-armed first."""

class ProgressMismatchError(ExecError):
    """The persisted progress belongs to a different disk plan."""

class CancelledError(ExecError):
    """Execution stopped at a boundary because cancellation was requested."""
