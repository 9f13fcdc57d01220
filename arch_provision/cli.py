# arch_provision/cli.py

from dataclasses import dataclass
from enum import IntEnum
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from arch_provision import core, __version__
from arch_provision.config.models import InstallerConfig
from arch_provision.confirmation import Denied, RichConfirmationGate, TokenStore, plan_table
from arch_provision.disk import BootMode, DiskPlan, build_plan, render, validate
from arch_provision.executors.disk import disk_size_mib, is_whole_disk, list_disks
from arch_provision.executors.step import CancellationFlag, StepExecutor
from arch_provision.graph import order
from arch_provision.hardware import is_uefi, resolve_cpu, resolve_gpu
from arch_provision.models import Stage, StageState
from arch_provision.progress import ProgressStore
from arch_provision.stages import STAGE_NAMES, build_stages
from arch_provision.utils.exceptions import (
    CancelledError,
    ConfigError,
    ConfirmationRequiredError,
    ExecError,
    GraphError,
    PlanError,
    ShellCommandError,
)
from arch_provision.utils.executor import Executor
from arch_provision.utils.logger import RichAppLogger, initialize_app_logger

DEFAULT_CONFIG_PATH = Path("config.toml")

app = typer.Typer(
    name=core.APP_NAME,
    help="Declarative, resumable Arch Linux + Enlightenment installer.",
    no_args_is_help=True,
    add_completion=False,
)

err_console = Console(stderr=True)


class ExitCode(IntEnum):
    OK = 0
    CONFIG_ERROR = 1
    PLAN_INVALID = 3
    CONFIRMATION = 4
    EXECUTION_FAILED = 5
    CANCELLED = 130


# --- 1. Shared setup ---

@dataclass
class Session:
    config_path: Path
    config: InstallerConfig
    state_dir: str
    logger: RichAppLogger
    runner: Executor

    @property
    def store(self) -> ProgressStore:
        return ProgressStore(self.state_dir)

    @property
    def tokens(self) -> TokenStore:
        return TokenStore(self.state_dir)


def _open_session(config_path: Path, state_dir: Optional[str]) -> Session:
    """Loads the config, then sets up logging and the command runner from it."""
    try:
        config = InstallerConfig.load_config_from_file(config_path)
    except ConfigError as e:
        err_console.print(f"[bold red]Configuration error:[/bold red] {e}")
        raise typer.Exit(ExitCode.CONFIG_ERROR)

    core.app_logger = initialize_app_logger(core.APP_NAME, log_directory=config.engine.log_dir)
    runner = Executor(
        logger_instance=core.app_logger,
        default_timeout=config.engine.command_timeout,
        chroot_path=config.engine.mount_root,
        heartbeat_interval=config.engine.heartbeat_interval,
    )
    return Session(config_path, config, state_dir or config.engine.state_dir, core.app_logger, runner)


def _build_plan(session: Session) -> DiskPlan:
    """Probes the target disk and builds a validated DiskPlan. Exits with PLAN_INVALID on failure."""
    config = session.config
    device = config.disk.device
    try:
        if not is_whole_disk(session.runner, device):
            table = Table(title="Available disks")
            for column in ("Device", "Size", "Model"):
                table.add_column(column)
            for row in list_disks(session.runner):
                table.add_row(*row)
            session.logger.console.print(table)
            raise PlanError(f"{device} is not a whole disk")

        if config.disk.mode == "auto":
            mode = BootMode.UEFI if is_uefi() else BootMode.BIOS
        else:
            mode = BootMode(config.disk.mode)

        plan = build_plan(
            device,
            disk_size_mib(session.runner, device),
            mode,
            config.partition_requests(uefi=mode == BootMode.UEFI),
            min_root_mib=config.min_root_mib(),
        )
        validate(plan)
    except (PlanError, ValueError, ShellCommandError) as e:
        session.logger.error(f"Invalid disk plan: {e}")
        raise typer.Exit(ExitCode.PLAN_INVALID)
    return plan


def _build_stages(session: Session, plan: DiskPlan) -> List[Stage]:
    cpu = resolve_cpu(session.config.hardware.cpu, session.runner)
    gpu = resolve_gpu(session.config.hardware.gpu, session.runner)
    session.logger.info(f"Hardware: CPU {cpu.value}, GPU {gpu.value}, boot mode {plan.mode.value}")
    stages = build_stages(session.config, plan, cpu, gpu)
    try:
        return order(stages)
    except GraphError as e:
        session.logger.error(f"Invalid stage graph: {e}")
        raise typer.Exit(ExitCode.PLAN_INVALID)


def _report_failure(session: Session, error: ExecError) -> None:
    lines = [f"[bold]{error}[/bold]", ""]
    lines.append(f"Stage:   {error.stage or '-'}")
    lines.append(f"Step:    {error.step or '-'}")
    lines.append(f"Command: {error.command or '-'}")
    if error.output:
        tail = "\n".join(error.output.splitlines()[-20:])
        lines += ["", "Output (tail):", tail]
    lines += ["", "Fix the cause, then continue with:",
              f"  [cyan]{core.APP_NAME} resume --config {session.config_path}[/cyan]"]
    session.logger.console.print(Panel("\n".join(lines), title="Installation failed", border_style="bold red"))


def _execute(session: Session, plan: DiskPlan, stages: List[Stage], interactive: bool) -> None:
    """Runs the stages, asking for confirmation first if an irreversible stage is still pending."""
    token = session.tokens.load()
    if token is not None and not token.is_valid_for(plan):
        session.logger.warning("Stored confirmation belongs to a different plan and is ignored.")
        token = None

    cancel = CancellationFlag()
    executor = StepExecutor(session.runner, session.store, session.logger, plan, token=token, cancel=cancel)

    try:
        if token is None and executor.needs_confirmation(stages):
            if not interactive:
                raise ConfirmationRequiredError(
                    f"No confirmation for plan {plan.content_hash()[:12]}; run 'confirm' first"
                )
            answer = RichConfirmationGate(
                console=session.logger.console, summary=session.config.display_summary()
            ).request_confirmation(plan)
            if isinstance(answer, Denied):
                session.logger.warning(f"Confirmation denied: {answer.reason}")
                raise typer.Exit(ExitCode.CONFIRMATION)
            executor.token = answer

        cancel.install_signal_handlers(session.logger)
        executor.run_all(stages)
    except ConfirmationRequiredError as e:
        session.logger.error(str(e))
        raise typer.Exit(ExitCode.CONFIRMATION)
    except CancelledError as e:
        session.logger.warning(f"{e}. Continue later with '{core.APP_NAME} resume --config {session.config_path}'.")
        raise typer.Exit(ExitCode.CANCELLED)
    except KeyboardInterrupt:
        session.logger.warning("Interrupted.")
        raise typer.Exit(ExitCode.CANCELLED)
    except ExecError as e:
        _report_failure(session, e)
        raise typer.Exit(ExitCode.EXECUTION_FAILED)
    except ValueError as e:
        session.logger.error(str(e))
        raise typer.Exit(ExitCode.EXECUTION_FAILED)

    session.tokens.discard()
    session.logger.console.print(Panel(
        f"Arch Linux is installed on {plan.device}. Remove the installation media and reboot.",
        title="Installation complete", border_style="green",
    ))


# --- 2. Commands ---

ConfigOption = typer.Option(DEFAULT_CONFIG_PATH, "--config", "-c", help="Installer configuration (TOML).")
StateDirOption = typer.Option(None, "--state-dir", help="Override engine.state_dir from the configuration.")


def _version_callback(value: bool):
    if value:
        typer.echo(f"{core.APP_NAME} {__version__}")
        raise typer.Exit()


@app.callback()
def main(version: bool = typer.Option(False, "--version", callback=_version_callback, is_eager=True,
                                      help="Show the version and exit.")):
    """Installs Arch Linux with the Enlightenment desktop onto one disk."""


@app.command()
def plan(config: Path = ConfigOption, state_dir: Optional[str] = StateDirOption):
    """Show the disk plan, the partitioning commands and the stage order. Changes nothing."""
    session = _open_session(config, state_dir)
    disk_plan = _build_plan(session)
    stages = _build_stages(session, disk_plan)
    console = session.logger.console

    console.print(session.config.display_summary())
    console.print(plan_table(disk_plan))
    console.print("[bold]Partitioning commands:[/bold]")
    for spec in render(disk_plan):
        console.print(f"  {spec.display()}", highlight=False)

    table = Table(title="Stages")
    table.add_column("#", justify="right")
    table.add_column("Stage")
    table.add_column("Depends on")
    table.add_column("Steps", justify="right")
    table.add_column("Irreversible")
    for index, stage in enumerate(stages, start=1):
        table.add_row(str(index), stage.name, ", ".join(stage.depends_on) or "-",
                      str(len(stage.steps)), "yes" if stage.irreversible else "")
    console.print(table)
    console.print(f"Plan fingerprint: {disk_plan.content_hash()[:12]}")


@app.command()
def confirm(config: Path = ConfigOption, state_dir: Optional[str] = StateDirOption):
    """Ask for consent to erase the target disk and store it for 'run'."""
    session = _open_session(config, state_dir)
    disk_plan = _build_plan(session)
    answer = RichConfirmationGate(
        console=session.logger.console, summary=session.config.display_summary()
    ).request_confirmation(disk_plan)
    if isinstance(answer, Denied):
        session.logger.warning(f"Confirmation denied: {answer.reason}")
        raise typer.Exit(ExitCode.CONFIRMATION)
    session.tokens.save(answer)
    session.logger.info(f"Confirmation stored for plan {answer.plan_hash[:12]} on {answer.device}.")


@app.command()
def run(config: Path = ConfigOption, state_dir: Optional[str] = StateDirOption,
        interactive: bool = typer.Option(True, "--interactive/--non-interactive",
                                         help="Prompt for confirmation when none is stored.")):
    """Run every stage in order, skipping what is already done."""
    session = _open_session(config, state_dir)
    disk_plan = _build_plan(session)
    stages = _build_stages(session, disk_plan)
    _execute(session, disk_plan, stages, interactive)


@app.command()
def resume(config: Path = ConfigOption, state_dir: Optional[str] = StateDirOption,
           interactive: bool = typer.Option(True, "--interactive/--non-interactive",
                                            help="Prompt for confirmation when none is stored.")):
    """Re-arm failed stages and continue from the first uncompleted one."""
    session = _open_session(config, state_dir)
    disk_plan = _build_plan(session)
    stages = _build_stages(session, disk_plan)

    executor = StepExecutor(session.runner, session.store, session.logger, disk_plan)
    try:
        for name in executor.failed_stages():
            executor.rearm(name)
        first = executor.resume(stages)
    except ExecError as e:
        _report_failure(session, e)
        raise typer.Exit(ExitCode.EXECUTION_FAILED)
    except ValueError as e:
        session.logger.error(str(e))
        raise typer.Exit(ExitCode.EXECUTION_FAILED)

    if first is None:
        session.logger.info("Every stage is already completed.")
    else:
        session.logger.info(f"Resuming at stage '{first.name}'.")
    _execute(session, disk_plan, stages, interactive)


@app.command()
def reset(config: Path = ConfigOption, state_dir: Optional[str] = StateDirOption,
          stage: Optional[str] = typer.Option(None, "--stage", help="Clear only this stage."),
          yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask before clearing.")):
    """Forget recorded progress (and any stored confirmation)."""
    session = _open_session(config, state_dir)
    what = f"the progress of stage '{stage}'" if stage else "all recorded progress"
    if not yes and not typer.confirm(f"Clear {what}?"):
        raise typer.Exit(ExitCode.CONFIRMATION)

    executor = StepExecutor(session.runner, session.store, session.logger)
    try:
        executor.reset(stage)
    except ValueError as e:
        session.logger.error(str(e))
        raise typer.Exit(ExitCode.EXECUTION_FAILED)
    if stage is None:
        session.tokens.discard()


@app.command()
def status(config: Path = ConfigOption, state_dir: Optional[str] = StateDirOption):
    """Show the recorded state of every stage. Read-only."""
    session = _open_session(config, state_dir)
    try:
        record = session.store.load()
    except ValueError as e:
        session.logger.error(str(e))
        raise typer.Exit(ExitCode.EXECUTION_FAILED)

    console = session.logger.console
    if record.empty:
        console.print("No progress recorded.")
        return

    table = Table(title=f"Progress of plan {(record.plan_hash or '?')[:12]}")
    table.add_column("Stage")
    table.add_column("State")
    table.add_column("Updated")
    table.add_column("Last error")
    styles = {StageState.COMPLETED: "green", StageState.FAILED: "bold red", StageState.RUNNING: "yellow"}
    names = list(STAGE_NAMES) + [name for name in record.stages if name not in STAGE_NAMES]
    for name in names:
        stage_record = record.stages.get(name)
        state = stage_record.state if stage_record else StageState.PENDING
        style = styles.get(state, "dim")
        table.add_row(
            name,
            f"[{style}]{state.value}[/{style}]",
            stage_record.timestamp if stage_record else "-",
            stage_record.last_error.message if stage_record and stage_record.last_error else "",
        )
    console.print(table)

    token = session.tokens.load()
    if token is not None:
        console.print(f"Stored confirmation: plan {token.plan_hash[:12]} on {token.device} ({token.issued_at})")
