# arch_provision/utils/logger.py

import logging
import os
import sys
from contextlib import contextmanager

from rich.console import Console
from rich.logging import RichHandler
from rich.text import Text
from rich.theme import Theme

from arch_provision.utils.exceptions import ExecError, ShellCommandError

# --- 1. Custom Log Levels and Subclassed Logger ---
# Stage headers are logged at SECTION, step progress at EXECUTE.
SECTION_LEVEL_NUM = 25
EXECUTE_LEVEL_NUM = 26
logging.addLevelName(SECTION_LEVEL_NUM, 'SECTION')
logging.addLevelName(EXECUTE_LEVEL_NUM, 'EXECUTE')


class AppLogger(logging.Logger):
    """
    Subclasses logging.Logger to add custom methods for SECTION and EXECUTE levels.
    """

    def section(self, msg, *args, **kwargs):
        """Logs a message at the SECTION level."""
        if self.isEnabledFor(SECTION_LEVEL_NUM):
            self._log(SECTION_LEVEL_NUM, msg, args, **kwargs)

    def execute(self, msg, *args, **kwargs):
        """Logs a message at the EXECUTE level."""
        if self.isEnabledFor(EXECUTE_LEVEL_NUM):
            self._log(EXECUTE_LEVEL_NUM, msg, args, **kwargs)


logging.setLoggerClass(AppLogger)


# --- 2. File Formatter ---
class FileFormatter(logging.Formatter):
    """
    Fixed-width formatter for the install log file.
    """

    FORMAT = '%(asctime)s - %(levelname_fixed)s - %(name_fixed)s - %(filename_fixed)s:%(lineno_fixed)s - %(message)s'

    def __init__(self):
        super().__init__(self.FORMAT)

    def format(self, record):
        record.levelname_fixed = f"{record.levelname:<9}"
        record.name_fixed = f"{record.name:<15}"
        record.filename_fixed = f"{record.filename:<20}"
        record.lineno_fixed = f"{record.lineno:<5}"
        return super().format(record)


# --- 3. RichAppLogger Wrapper ---
class RichAppLogger:
    """
    Presents provisioning progress on a Rich Console and mirrors it into the
    AppLogger file log.

    Stages are announced with section(), each external command runs inside
    execution_step(), and steps whose post-condition already holds are
    reported with skipped().
    """

    THEME = Theme({
        "section": "bold yellow on black",
        "skipped": "cyan",
        "heartbeat": "dim",
    })

    def __init__(self, console: Console, logger: AppLogger):
        self.console = console
        self.logger: AppLogger = logger
        self.console.push_theme(self.THEME)

    def section(self, message: str, *args, **kwargs):
        """Prints a styled stage header and logs it at SECTION level."""
        self.console.print(Text(f"STAGE: {message}", style="section"))
        self.logger.section(f"STAGE: {message}", *args, **kwargs)

    @contextmanager
    def execution_step(self, message: str):
        """
        Shows a live spinner while the block runs and replaces it with a
        permanent [COMPLETED], [CRITICAL] or [FAILED] line.

        Command and execution errors are expected failures and are reported
        without a traceback; anything else prints a rich traceback. The
        exception is always re-raised.
        """
        with self.console.status(f"[bold green]...[/] [RUNNING] {message}", spinner="dots") as status:
            self.logger.execute(f"[RUNNING] {message}")
            try:
                yield status
                self.console.print(f"[green]✔ [COMPLETED][/green] {message}")
                self.logger.execute(f"[COMPLETED] {message}")
            except Exception as e:
                is_critical = isinstance(e, (ShellCommandError, ExecError))
                status_tag = "[CRITICAL]" if is_critical else "[FAILED]"

                self.console.print(f"[bold red]✘ {status_tag}[/bold red] {message}")
                self.logger.execute(f"{status_tag} {message}")
                if is_critical:
                    self.logger.error(f"Execution step failed: {message}: {e}")
                else:
                    self.logger.exception(f"Exception during execution step: {message}")

                if not is_critical:
                    self.console.print("\n[bold red]Traceback (most recent call last):[/bold red]")
                    self.console.print_exception(show_locals=False)
                raise

    def skipped(self, message: str):
        """Reports a step whose post-condition was already satisfied."""
        self.console.print(f"[skipped]↷ [SKIPPED][/skipped] {message}")
        self.logger.execute(f"[SKIPPED] {message}")

    def heartbeat(self, message: str):
        """Liveness line for long-running commands."""
        self.console.print(f"[heartbeat]… {message}[/heartbeat]")
        self.logger.info(message)

    # --- Standard Logging Wrappers ---

    def info(self, message, *args, **kwargs):
        self.logger.info(message, *args, **kwargs)

    def warning(self, message, *args, **kwargs):
        self.logger.warning(message, *args, **kwargs)

    def error(self, message, *args, **kwargs):
        self.logger.error(message, *args, **kwargs)

    def debug(self, message, *args, **kwargs):
        self.logger.debug(message, *args, **kwargs)

    def critical(self, message, *args, **kwargs):
        self.logger.critical(message, *args, **kwargs)

    def exception(self, message, *args, **kwargs):
        """Logs an ERROR to file with traceback and prints a rich traceback to the console."""
        self.logger.exception(message, *args, **kwargs)
        self.console.print(f"[bold red]FATAL ERROR: {message}[/bold red]")
        self.console.print_exception(show_locals=False)


# --- 4. Filter to keep EXECUTE records off the console ---
class ExecuteFilter(logging.Filter):
    """
    execution_step() and skipped() already print step status to the console,
    so the RichHandler must not print the EXECUTE records a second time.
    """
    def filter(self, record):
        return record.levelno != EXECUTE_LEVEL_NUM


# --- 5. Initialization Routine ---
def initialize_app_logger(
    app_name: str,
    log_directory: str = "logs",
    log_file_name: str = "arch-provision.log",
    file_log_level: int = logging.DEBUG,
    console_log_level: int = logging.INFO,
) -> RichAppLogger:
    """
    Configures the AppLogger with a file handler and a RichHandler and
    returns the RichAppLogger wrapper around it.
    """
    logger: AppLogger = logging.getLogger(app_name)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    os.makedirs(log_directory, exist_ok=True)
    log_file_path = os.path.join(log_directory, log_file_name)

    file_handler = logging.FileHandler(log_file_path, encoding='utf-8')
    file_handler.setLevel(file_log_level)
    file_handler.setFormatter(FileFormatter())
    logger.addHandler(file_handler)

    console = Console(file=sys.stderr, soft_wrap=True)

    stream_handler = RichHandler(
        console=console,
        show_time=False,
        show_level=True,
        show_path=False,
        keywords=[],
        level=console_log_level
    )
    stream_handler.addFilter(ExecuteFilter())
    logger.addHandler(stream_handler)

    return RichAppLogger(console, logger)
