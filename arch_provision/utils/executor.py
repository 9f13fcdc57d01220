# arch_provision/utils/executor.py

import collections
import queue
import shlex
import subprocess
import threading
import time
from typing import IO, Any, Deque, Iterable, List, Optional, Tuple, Union

from arch_provision.models import CommandResult, CommandSpec
from arch_provision.utils.exceptions import (
    CommandNotFoundError,
    CommandTimeoutError,
    InvalidCommandError,
    PermissionDeniedError,
    ShellCommandError,
)
from arch_provision.utils.logger import RichAppLogger

# Lines of output kept from a streamed (long-running) command
STREAM_TAIL_LINES = 200
# Seconds an interrupted child gets between SIGTERM and SIGKILL
STOP_TIMEOUT = 10.0


class Executor:
    """
    Runs CommandSpecs with subprocess on behalf of the provisioning engine.

    The logger is injected so tests can substitute a mock. Chroot commands
    are prefixed with `arch-chroot <chroot_path>`. Long-running commands are
    streamed instead of captured and emit a heartbeat every
    `heartbeat_interval` seconds.
    """

    def __init__(self,
                 logger_instance: RichAppLogger,
                 default_timeout: Optional[float] = 30.0,
                 chroot_path: str = "/mnt",
                 heartbeat_interval: float = 30.0):
        self.logger = logger_instance

        if default_timeout is not None and default_timeout <= 0:
            self.logger.error("Default timeout must be a positive number or None.")
            raise ValueError("Default timeout must be a positive number or None.")
        if not isinstance(chroot_path, str) or not chroot_path:
            self.logger.error("Chroot path must be a non-empty string.")
            raise ValueError("Chroot path must be a non-empty string.")
        if heartbeat_interval <= 0:
            raise ValueError("Heartbeat interval must be a positive number.")

        self._default_timeout = default_timeout
        self._chroot_path = chroot_path
        self._heartbeat_interval = heartbeat_interval
        self.logger.debug(f"Executor initialized with default_timeout: {self._default_timeout}, chroot_path: {self._chroot_path}")

    def _prepare_command(self, command: List[str], chroot: bool) -> List[str]:
        """
        Validates an argv list and prepends arch-chroot when requested.
        """
        if not command:
            self.logger.error("Attempted to prepare an empty command.")
            raise InvalidCommandError(str(command), "Command cannot be empty.")
        if not isinstance(command, list) or not all(isinstance(arg, str) for arg in command):
            self.logger.error(f"Invalid command: {command!r}. Expected a list of strings.")
            raise InvalidCommandError(str(command), "Command must be a list of strings.")

        if chroot:
            return ["arch-chroot", self._chroot_path] + command
        return command

    def execute_command(self,
                        command: List[str],
                        timeout: Optional[float] = None,
                        check: bool = True,
                        allowed_exit_codes: Iterable[int] = (0,),
                        input: Optional[str] = None,
                        display: Optional[str] = None
                        ) -> Tuple[int, str, str]:
        """
        Low-level execution through subprocess.run.

        Raises a ShellCommandError subclass when the program is missing, times
        out, or (with check=True) exits with a code outside allowed_exit_codes.
        """
        actual_timeout = timeout if timeout is not None else self._default_timeout
        cmd_string_for_log = display or shlex.join(command)

        self.logger.debug(f"Attempting low-level execution: '{cmd_string_for_log}' "
                          f"timeout={actual_timeout}s, check={check}")

        try:
            process = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=actual_timeout,
                check=False,
                input=input,
            )
        except FileNotFoundError:
            self.logger.error(f"Command '{cmd_string_for_log}' not found. Ensure it's in the system's PATH.")
            raise CommandNotFoundError(command=cmd_string_for_log, stderr="Command not found. Check PATH.")
        except PermissionError:
            self.logger.error(f"Permission denied while starting '{cmd_string_for_log}'.")
            raise PermissionDeniedError(command=cmd_string_for_log)
        except subprocess.TimeoutExpired as e:
            self.logger.warning(f"Command '{cmd_string_for_log}' timed out after {actual_timeout} seconds.")
            raise CommandTimeoutError(command=cmd_string_for_log, timeout=actual_timeout,
                                      stdout=_decode(e.stdout), stderr=_decode(e.stderr))
        except (TypeError, ValueError) as e:
            self.logger.error(f"Argument error during low-level command execution '{cmd_string_for_log}': {e}")
            raise InvalidCommandError(cmd_string_for_log, f"Argument error in command execution: {e}")

        stdout = process.stdout or ""
        stderr = process.stderr or ""
        exit_code = process.returncode

        if check:
            self._raise_for_exit_code(cmd_string_for_log, exit_code, stdout, stderr, allowed_exit_codes)

        self.logger.debug(f"Low-level execution of '{cmd_string_for_log}' completed with exit code {exit_code}")
        return exit_code, stdout, stderr

    def _stream_command(self,
                        command: List[str],
                        description: str,
                        status: Any = None,
                        input: Optional[str] = None,
                        display: Optional[str] = None
                        ) -> Tuple[int, str, str]:
        """
        Runs a long-running command without a timeout, merging stderr into
        stdout. A reader thread forwards output lines through a queue so a
        heartbeat is logged every heartbeat_interval seconds, whether or not
        the command prints anything.

        If the wait is interrupted (KeyboardInterrupt, any exception), the
        child is terminated, then killed if it does not exit within
        STOP_TIMEOUT seconds, before the exception propagates.
        """
        cmd_string_for_log = display or shlex.join(command)
        self.logger.debug(f"Streaming long-running command: '{cmd_string_for_log}'")

        try:
            process = subprocess.Popen(
                command,
                stdin=subprocess.PIPE if input is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
            )
        except FileNotFoundError:
            self.logger.error(f"Command '{cmd_string_for_log}' not found. Ensure it's in the system's PATH.")
            raise CommandNotFoundError(command=cmd_string_for_log, stderr="Command not found. Check PATH.")
        except PermissionError:
            self.logger.error(f"Permission denied while starting '{cmd_string_for_log}'.")
            raise PermissionDeniedError(command=cmd_string_for_log)

        with process:
            lines: "queue.Queue[Optional[str]]" = queue.Queue()
            reader = threading.Thread(target=_pump_lines, args=(process.stdout, lines), daemon=True)
            reader.start()
            try:
                if input is not None:
                    process.stdin.write(input)
                    process.stdin.close()
                tail = self._follow_output(lines, description, status)
                exit_code = process.wait()
            except BaseException:
                self._stop_process(process, cmd_string_for_log)
                raise
            finally:
                reader.join(timeout=STOP_TIMEOUT)
        return exit_code, "".join(tail), ""

    def _follow_output(self, lines: "queue.Queue[Optional[str]]", description: str,
                       status: Any = None) -> Deque[str]:
        """Collects the output tail until EOF, logging a heartbeat whenever heartbeat_interval elapses."""
        tail: Deque[str] = collections.deque(maxlen=STREAM_TAIL_LINES)
        started = last_beat = time.monotonic()
        while True:
            wait = max(0.0, last_beat + self._heartbeat_interval - time.monotonic())
            try:
                line = lines.get(timeout=wait)
            except queue.Empty:
                line = ""
            else:
                if line is None:
                    return tail
                tail.append(line)

            now = time.monotonic()
            if now - last_beat >= self._heartbeat_interval:
                last_beat = now
                elapsed = int(now - started)
                last_output = tail[-1].strip()[:80] if tail else "no output yet"
                self.logger.heartbeat(f"{description}: still running after {elapsed}s ({last_output})")
                if status is not None:
                    status.update(f"[bold green]...[/] [RUNNING] {description} ({elapsed}s)")

    def _stop_process(self, process: subprocess.Popen, cmd_string_for_log: str) -> None:
        if process.poll() is not None:
            return
        self.logger.warning(f"Stopping '{cmd_string_for_log}' (pid {process.pid}).")
        process.terminate()
        try:
            process.wait(timeout=STOP_TIMEOUT)
        except subprocess.TimeoutExpired:
            self.logger.warning(f"'{cmd_string_for_log}' ignored SIGTERM; killing it.")
            process.kill()
            process.wait()

    def _raise_for_exit_code(self, cmd_string_for_log: str, exit_code: int, stdout: str, stderr: str,
                             allowed_exit_codes: Iterable[int]) -> None:
        if exit_code in tuple(allowed_exit_codes):
            return
        self.logger.error(f"Command: '{cmd_string_for_log}', Exit Code: {exit_code}, Stderr: {stderr.strip()}")

        if exit_code == 127 or "command not found" in stderr.lower():
            raise CommandNotFoundError(command=cmd_string_for_log, stdout=stdout, stderr=stderr)
        if exit_code == 126 or "permission denied" in stderr.lower():
            raise PermissionDeniedError(command=cmd_string_for_log, stdout=stdout, stderr=stderr)
        raise ShellCommandError(
            command=cmd_string_for_log,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            message=f"Command failed with exit code {exit_code}"
        )

    def run(self,
            spec: CommandSpec,
            description: Optional[str] = None
            ) -> CommandResult:
        """
        Executes a CommandSpec inside the logger's execution_step for TUI
        feedback. Exit codes outside spec.allowed_exit_codes raise a
        ShellCommandError (re-raised by execution_step after reporting).
        """
        description = description or spec.display()
        prepared_command_list = self._prepare_command(spec.argv, chroot=spec.chroot)
        stdin = spec.stdin.get_secret_value() if spec.stdin is not None else None

        with self.logger.execution_step(description) as status:
            if spec.long_running:
                exit_code, stdout, stderr = self._stream_command(
                    prepared_command_list, description, status=status, input=stdin, display=spec.display()
                )
                self._raise_for_exit_code(spec.display(), exit_code, stdout, stderr, spec.allowed_exit_codes)
            else:
                exit_code, stdout, stderr = self.execute_command(
                    command=prepared_command_list,
                    timeout=spec.timeout,
                    check=True,
                    allowed_exit_codes=spec.allowed_exit_codes,
                    input=stdin,
                    display=spec.display()
                )

            self.logger.debug(f"Command '{description}' successfully completed. Output details:")
            if stdout:
                self.logger.debug(f"  Stdout:\n{stdout.strip()}")
            if stderr:
                self.logger.debug(f"  Stderr:\n{stderr.strip()}")

            return CommandResult(exit_code=exit_code, stdout=stdout, stderr=stderr)

    def probe(self, spec: CommandSpec) -> CommandResult:
        """
        Runs a read-only check command quietly. Nonzero exits are returned,
        not raised; a missing program or a timeout still raises.
        """
        prepared_command_list = self._prepare_command(spec.argv, chroot=spec.chroot)
        stdin = spec.stdin.get_secret_value() if spec.stdin is not None else None
        exit_code, stdout, stderr = self.execute_command(
            command=prepared_command_list,
            timeout=spec.timeout,
            check=False,
            input=stdin,
            display=spec.display()
        )
        return CommandResult(exit_code=exit_code, stdout=stdout, stderr=stderr)


def _decode(data: Union[bytes, str, None]) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode(errors="replace")
    return data


def _pump_lines(stream: IO[str], lines: "queue.Queue[Optional[str]]") -> None:
    """Reader thread body: forwards each line of `stream`, then None once it hits EOF."""
    try:
        for line in stream:
            lines.put(line)
    finally:
        lines.put(None)
