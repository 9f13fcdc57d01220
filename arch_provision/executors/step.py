# arch_provision/executors/step.py

import signal
import threading
from typing import List, Optional, Sequence

from arch_provision.confirmation import ConfirmationToken
from arch_provision.disk import DiskPlan
from arch_provision.graph import order
from arch_provision.models import CommandRunner, Stage, StageOutcome, StageState, Step, StepState
from arch_provision.progress import ErrorRecord, ProgressRecord, ProgressStore
from arch_provision.utils.exceptions import (
    CancelledError,
    CommandFailedError,
    ConfirmationRequiredError,
    ExecError,
    ProgressMismatchError,
    ShellCommandError,
    StageFailedError,
    VerificationFailedError,
)
from arch_provision.utils.logger import RichAppLogger

# Output lines kept in the progress record for a failed step
OUTPUT_TAIL_LINES = 40


class CancellationFlag:
    """Set from a signal handler, polled by the executor between steps and stages."""

    def __init__(self):
        self._event = threading.Event()

    def set(self) -> None:
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    def install_signal_handlers(self, logger: Optional[RichAppLogger] = None) -> None:
        """First SIGINT/SIGTERM requests cancellation; a second one interrupts immediately."""
        def handler(signum, frame):
            if self.is_set():
                signal.signal(signal.SIGINT, signal.default_int_handler)
                raise KeyboardInterrupt
            self.set()
            if logger is not None:
                logger.warning("Cancellation requested; stopping at the next safe boundary (repeat to abort now).")

        signal.signal(signal.SIGINT, handler)
        signal.signal(signal.SIGTERM, handler)


class StepExecutor:
    """
    Runs stages step by step against a persisted ProgressRecord.

    Every step first evaluates its post-condition and is skipped when the
    intended state is already present, so re-running a partially completed
    plan does not repeat destructive commands. A step that runs must exit
    with an allowed code and satisfy its post-condition afterwards,
    otherwise the stage is marked Failed and execution stops. Completed
    stages are never rolled back.

    The executor is the only writer of the ProgressRecord.
    """

    def __init__(self,
                 runner: CommandRunner,
                 store: ProgressStore,
                 logger_instance: RichAppLogger,
                 plan: Optional[DiskPlan] = None,
                 token: Optional[ConfirmationToken] = None,
                 cancel: Optional[CancellationFlag] = None):
        self.runner = runner
        self.store = store
        self.logger = logger_instance
        self.plan = plan
        self.plan_hash = plan.content_hash() if plan is not None else None
        self.token = token
        self.cancel = cancel or CancellationFlag()

    # --- Progress handling ---

    def _load(self) -> ProgressRecord:
        if self.plan_hash is None:
            raise ValueError("A DiskPlan is required to execute or resume stages")
        record = self.store.load()
        if record.plan_hash is None or record.empty:
            record.plan_hash = self.plan_hash
        elif record.plan_hash != self.plan_hash:
            raise ProgressMismatchError(
                f"Recorded progress belongs to plan {record.plan_hash[:12]}, not {self.plan_hash[:12]}. "
                "Run 'reset' before executing a different disk plan."
            )
        return record

    def resume(self, stages: Sequence[Stage]) -> Optional[Stage]:
        """First stage, in dependency order, that is not Completed; None when all are."""
        record = self._load()
        for stage in order(stages):
            if record.state_of(stage.name) != StageState.COMPLETED:
                return stage
        return None

    def needs_confirmation(self, stages: Sequence[Stage]) -> bool:
        """True while any irreversible stage is not yet Completed."""
        record = self._load()
        return any(stage.irreversible and record.state_of(stage.name) != StageState.COMPLETED for stage in stages)

    def failed_stages(self) -> List[str]:
        record = self._load()
        return [name for name, stage in record.stages.items() if stage.state == StageState.FAILED]

    def rearm(self, stage_name: str) -> bool:
        """Moves a Failed stage back to Pending. Returns True if it was Failed."""
        record = self._load()
        if record.state_of(stage_name) != StageState.FAILED:
            return False
        record.set_state(stage_name, StageState.PENDING)
        self.store.save(record)
        self.logger.info(f"Stage '{stage_name}' re-armed after failure.")
        return True

    def reset(self, stage_name: Optional[str] = None) -> None:
        """Forgets the progress of one stage, or destroys the whole record."""
        if stage_name is None:
            self.store.destroy()
            self.logger.info("Progress record removed.")
            return
        record = self.store.load()
        if stage_name in record.stages:
            del record.stages[stage_name]
            self.store.save(record)
        self.logger.info(f"Progress of stage '{stage_name}' cleared.")

    # --- Execution ---

    def run_all(self, stages: Sequence[Stage]) -> List[StageOutcome]:
        """
        Runs every stage in dependency order, starting effectively at the
        first uncompleted one. The record is destroyed once all succeed.
        """
        outcomes: List[StageOutcome] = []
        for stage in order(stages):
            if self.cancel.is_set():
                raise CancelledError(f"Cancelled before stage '{stage.name}'", stage=stage.name)
            outcome = self.run(stage)
            outcomes.append(outcome)
            if outcome.cancelled:
                raise CancelledError(f"Cancelled during stage '{stage.name}'", stage=stage.name)

        self.store.destroy()
        self.logger.info("All stages completed; progress record removed.")
        return outcomes

    def run(self, stage: Stage) -> StageOutcome:
        record = self._load()
        state = record.state_of(stage.name)

        if state == StageState.COMPLETED:
            if not stage.volatile:
                self.logger.skipped(f"Stage '{stage.name}' already completed")
                return StageOutcome(stage=stage.name, state=StageState.COMPLETED, already_completed=True)
            self.logger.info(f"Stage '{stage.name}' completed earlier; re-checking its post-conditions.")
        if state == StageState.FAILED:
            error = record.stages[stage.name].last_error
            raise StageFailedError(
                f"Stage '{stage.name}' failed earlier ({error.message if error else 'unknown error'}); "
                "re-arm it with 'resume' or clear it with 'reset'",
                stage=stage.name,
            )
        if stage.irreversible:
            self._require_confirmation(stage)

        self.logger.section(stage.description or stage.name)
        record.set_state(stage.name, StageState.RUNNING)
        self.store.save(record)

        outcome = StageOutcome(stage=stage.name, state=StageState.RUNNING)
        deferred = False
        for index, step in enumerate(stage.steps):
            if index > 0 and self.cancel.is_set():
                if stage.irreversible:
                    if not deferred:
                        self.logger.warning(f"Cancellation deferred until stage '{stage.name}' completes.")
                        deferred = True
                else:
                    record.set_state(stage.name, StageState.PENDING)
                    self.store.save(record)
                    self.logger.warning(f"Stage '{stage.name}' cancelled before step '{step.name}'.")
                    outcome.state = StageState.PENDING
                    outcome.cancelled = True
                    return outcome

            try:
                step_state = self._run_step(stage, step)
            except ExecError as e:
                record.set_step(stage.name, step.key, StepState.FAILED)
                record.set_state(stage.name, StageState.FAILED, error=ErrorRecord(
                    kind=type(e).__name__,
                    message=str(e),
                    step=e.step,
                    command=e.command,
                    output="\n".join(e.output.splitlines()[-OUTPUT_TAIL_LINES:]),
                ))
                self.store.save(record)
                raise

            record.set_step(stage.name, step.key, step_state)
            self.store.save(record)
            if step_state == StepState.SKIPPED:
                outcome.skipped.append(step.name)
            else:
                outcome.executed.append(step.name)

        record.set_state(stage.name, StageState.COMPLETED)
        self.store.save(record)
        outcome.state = StageState.COMPLETED
        return outcome

    def _require_confirmation(self, stage: Stage) -> None:
        if self.token is None:
            raise ConfirmationRequiredError(
                f"Stage '{stage.name}' is irreversible and no confirmation was given for {self.plan.device}",
                stage=stage.name,
            )
        if not self.token.is_valid_for(self.plan):
            raise ConfirmationRequiredError(
                f"Confirmation was given for plan {self.token.plan_hash[:12]} ({self.token.device}), "
                f"not for plan {self.plan_hash[:12]} ({self.plan.device})",
                stage=stage.name,
            )

    def _already_satisfied(self, step: Step) -> bool:
        try:
            return step.check.evaluate(self.runner)
        except ShellCommandError as e:
            self.logger.warning(f"Could not evaluate '{step.check.description}' before '{step.name}': {e.message}")
            return False

    def _run_step(self, stage: Stage, step: Step) -> StepState:
        if step.check is not None and self._already_satisfied(step):
            self.logger.skipped(f"{step.name} ({step.check.description})")
            return StepState.SKIPPED

        try:
            self.runner.run(step.command, description=step.name)
        except ShellCommandError as e:
            raise CommandFailedError(
                f"Step '{step.name}' failed: {e.message}",
                exit_code=e.exit_code,
                stage=stage.name,
                step=step.name,
                command=step.command.display(),
                output="\n".join(part.strip() for part in (e.stdout, e.stderr) if part and part.strip()),
            ) from e

        if step.check is None:
            return StepState.COMPLETED

        detail = ""
        try:
            satisfied = step.check.evaluate(self.runner)
        except ShellCommandError as e:
            satisfied, detail = False, f" ({e.message})"
        if not satisfied:
            raise VerificationFailedError(
                f"Post-condition '{step.check.description}' does not hold after '{step.name}'{detail}",
                stage=stage.name,
                step=step.name,
                command=step.command.display(),
            )
        return StepState.COMPLETED
