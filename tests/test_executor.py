import io
import shlex
import subprocess
from unittest.mock import MagicMock, patch

import pytest
from pydantic import SecretStr

# ======= Execute with: pytest tests/test_executor.py ========

from arch_provision.models import CommandResult, CommandSpec
from arch_provision.utils.executor import Executor
from arch_provision.utils.exceptions import (
    ShellCommandError, CommandTimeoutError,
    CommandNotFoundError, PermissionDeniedError, InvalidCommandError
)
from arch_provision.utils.logger import RichAppLogger

# --- Test Helper Classes/Mocks ---

class MockCompletedProcess:
    """A mock object to simulate the return value of subprocess.run."""
    def __init__(self, returncode=0, stdout="", stderr=""):
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.args = []


class MockPopen:
    """Simulates a streamed subprocess.Popen: yields lines, then returns `returncode` from wait()."""
    def __init__(self, lines, returncode=0):
        self.stdout = io.StringIO("".join(lines))
        self.stdin = MagicMock()
        self._returncode = returncode
        self.pid = 4242

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.stdout.close()
        return False

    def poll(self):
        return self._returncode

    def wait(self, timeout=None):
        return self._returncode

    def terminate(self):
        pass

    def kill(self):
        pass

# --- Fixtures ---

@pytest.fixture
def mock_rich_logger():
    """Provides a fully-mocked RichAppLogger instance for dependency injection."""
    mock_logger = MagicMock(spec=RichAppLogger)

    # execution_step is a context manager that never suppresses exceptions
    mock_context_manager = MagicMock()
    mock_context_manager.__enter__.return_value = None
    mock_context_manager.__exit__.return_value = None
    mock_logger.execution_step.return_value = mock_context_manager

    return mock_logger

@pytest.fixture
def executor(mock_rich_logger):
    """Provides an Executor instance with the mocked logger injected."""
    return Executor(logger_instance=mock_rich_logger, default_timeout=5.0)

# ----------------------------------------------------------------------
# --- Tests for Initialization and Setup ---
# ----------------------------------------------------------------------

def test_executor_initialization(mock_rich_logger):
    """Tests if the Executor initializes correctly and stores the logger."""
    exec_instance = Executor(logger_instance=mock_rich_logger, default_timeout=10.0, chroot_path="/mnt/target")
    assert exec_instance._default_timeout == 10.0
    assert exec_instance._chroot_path == "/mnt/target"
    assert exec_instance.logger == mock_rich_logger
    mock_rich_logger.debug.assert_called()

def test_executor_initialization_invalid_timeout(mock_rich_logger):
    """Tests if initialization raises ValueError for invalid timeout."""
    with pytest.raises(ValueError, match="positive number"):
        Executor(logger_instance=mock_rich_logger, default_timeout=-1)

def test_executor_initialization_invalid_heartbeat(mock_rich_logger):
    with pytest.raises(ValueError, match="Heartbeat"):
        Executor(logger_instance=mock_rich_logger, heartbeat_interval=0)

# ----------------------------------------------------------------------
# --- Tests for _prepare_command ---
# ----------------------------------------------------------------------

def test_prepare_command_with_chroot(executor):
    """Tests preparation of an argv list with chroot prepended."""
    executor._chroot_path = "/newroot"
    prepared = executor._prepare_command(["ls", "/etc/pacman.conf"], chroot=True)
    assert prepared == ["arch-chroot", "/newroot", "ls", "/etc/pacman.conf"]

def test_prepare_command_without_chroot(executor):
    assert executor._prepare_command(["ls", "/etc"], chroot=False) == ["ls", "/etc"]

@pytest.mark.parametrize("command", [[], None, ["ls", 123], "ls /etc"])
def test_prepare_command_invalid_input(executor, command):
    """Only non-empty lists of strings are accepted; shell strings are rejected."""
    with pytest.raises(InvalidCommandError):
        executor._prepare_command(command, chroot=False)

# ----------------------------------------------------------------------
# --- Tests for execute_command (Low-level) ---
# ----------------------------------------------------------------------

@patch('subprocess.run')
def test_execute_command_success(mock_run, executor):
    """Tests successful command execution (exit code 0)."""
    mock_run.return_value = MockCompletedProcess(returncode=0, stdout="disk found", stderr="")

    exit_code, stdout, stderr = executor.execute_command(["lsblk"], check=True)

    mock_run.assert_called_once()
    assert exit_code == 0
    assert stdout == "disk found"
    assert stderr == ""

@patch('subprocess.run')
def test_execute_command_error_no_check(mock_run, executor):
    """Tests command failure when 'check' is False (no exception raised)."""
    mock_run.return_value = MockCompletedProcess(returncode=1, stdout="", stderr="Minor error")

    exit_code, stdout, stderr = executor.execute_command(["grep", "-q", "x", "/etc/fstab"], check=False)

    assert exit_code == 1
    assert stderr == "Minor error"
    executor.logger.error.assert_not_called()

@patch('subprocess.run')
def test_execute_command_error_shellcommanderror(mock_run, executor):
    """A disallowed exit code raises ShellCommandError carrying that code."""
    mock_run.return_value = MockCompletedProcess(returncode=5, stdout="Some output", stderr="Unknown failure")

    with pytest.raises(ShellCommandError) as excinfo:
        executor.execute_command(["parted", "-s", "/dev/sda", "print"], check=True)

    assert excinfo.value.exit_code == 5
    assert excinfo.value.stderr == "Unknown failure"
    executor.logger.error.assert_called_once()

@patch('subprocess.run')
def test_execute_command_allowed_exit_code(mock_run, executor):
    mock_run.return_value = MockCompletedProcess(returncode=1, stdout="", stderr="")

    exit_code, _, _ = executor.execute_command(["findmnt", "/mnt"], check=True, allowed_exit_codes=(0, 1))

    assert exit_code == 1

@patch('subprocess.run')
def test_execute_command_command_not_found_error(mock_run, executor):
    """Exit code 127 maps to CommandNotFoundError."""
    mock_run.return_value = MockCompletedProcess(returncode=127, stdout="", stderr="bash: my_command: command not found")

    with pytest.raises(CommandNotFoundError) as excinfo:
        executor.execute_command(["my_command", "--arg"], check=True)

    assert excinfo.value.exit_code == 127
    executor.logger.error.assert_called_once()

@patch('subprocess.run')
def test_execute_command_permission_denied(mock_run, executor):
    mock_run.return_value = MockCompletedProcess(returncode=126, stderr="permission denied")

    with pytest.raises(PermissionDeniedError):
        executor.execute_command(["./script"], check=True)

@patch('subprocess.run', side_effect=FileNotFoundError())
def test_execute_command_missing_program(mock_run, executor):
    with pytest.raises(CommandNotFoundError):
        executor.execute_command(["no-such-tool"])

@patch('subprocess.run', side_effect=subprocess.TimeoutExpired(cmd=["test"], timeout=5.0, output=b'', stderr=b''))
def test_execute_command_timeout_error(mock_run, executor):
    """Tests CommandTimeoutError when subprocess.TimeoutExpired is raised."""
    with pytest.raises(CommandTimeoutError) as excinfo:
        executor.execute_command(["mkfs.ext4", "/dev/sda3"], timeout=5.0)

    assert "timed out" in str(excinfo.value)
    assert excinfo.value.timeout == 5.0
    executor.logger.warning.assert_called_once()

@patch('subprocess.run')
def test_execute_command_uses_default_timeout(mock_run, executor):
    mock_run.return_value = MockCompletedProcess()

    executor.execute_command(["true"])

    assert mock_run.call_args[1]['timeout'] == 5.0

# ----------------------------------------------------------------------
# --- Tests for run() (High-level) ---
# ----------------------------------------------------------------------

@patch.object(Executor, 'execute_command')
def test_run_success(mock_execute_command, executor, mock_rich_logger):
    """Tests the high-level run() method on successful command execution."""
    mock_execute_command.return_value = (0, "Success!", "")

    result = executor.run(CommandSpec.of("mkswap", "/dev/sda2"), description="Creating swap")

    assert result == CommandResult(0, "Success!", "")
    mock_rich_logger.execution_step.assert_called_once_with("Creating swap")
    executor.logger.debug.assert_called()

@patch.object(Executor, 'execute_command')
def test_run_passes_spec_timeout_and_exit_codes(mock_execute_command, executor):
    mock_execute_command.return_value = (0, "", "")
    spec = CommandSpec.of("mkfs.ext4", "/dev/sda3", timeout=300, allowed_exit_codes=(0, 1))

    executor.run(spec)

    kwargs = mock_execute_command.call_args[1]
    assert kwargs['timeout'] == 300
    assert kwargs['allowed_exit_codes'] == (0, 1)

@patch.object(Executor, 'execute_command')
def test_run_failure(mock_execute_command, executor, mock_rich_logger):
    """Tests the high-level run() method on command execution failure."""
    mock_execute_command.side_effect = ShellCommandError(command="parted", exit_code=1, stderr="Permission denied.")

    with pytest.raises(ShellCommandError):
        executor.run(CommandSpec.of("parted", "-s", "/dev/sda", "mklabel", "gpt"), description="Test failure")

    mock_rich_logger.execution_step.assert_called_once_with("Test failure")

@patch.object(Executor, 'execute_command')
def test_run_with_chroot(mock_execute_command, executor, mock_rich_logger):
    """The command handed to the low-level executor is prefixed with arch-chroot."""
    mock_execute_command.return_value = (0, "", "")
    executor._chroot_path = "/mnt/arch"

    executor.run(CommandSpec.of("pacman", "-S", "base", chroot=True), description="Install base system")

    expected_command = shlex.split(f"arch-chroot {executor._chroot_path} pacman -S base")
    actual_command = mock_execute_command.call_args[1]['command']
    assert actual_command == expected_command

@patch.object(Executor, 'execute_command')
def test_run_feeds_secret_stdin_without_displaying_it(mock_execute_command, executor):
    mock_execute_command.return_value = (0, "", "")
    spec = CommandSpec.of("chpasswd", chroot=True, stdin=SecretStr("root:hunter2hunter2\n"))

    executor.run(spec, description="Setting password for root")

    kwargs = mock_execute_command.call_args[1]
    assert kwargs['input'] == "root:hunter2hunter2\n"
    assert "hunter2" not in kwargs['display']

# ----------------------------------------------------------------------
# --- Tests for long-running commands ---
# ----------------------------------------------------------------------

@patch('subprocess.Popen')
def test_run_long_running_streams_output(mock_popen, executor):
    mock_popen.return_value = MockPopen(["resolving dependencies...\n", "installing base...\n"])

    result = executor.run(CommandSpec.of("pacstrap", "-K", "/mnt", "base", long_running=True),
                          description="pacstrap")

    assert result.exit_code == 0
    assert "installing base" in result.stdout
    # no timeout is applied to streamed commands
    assert 'timeout' not in mock_popen.call_args[1]

@patch('subprocess.Popen')
def test_run_long_running_failure_raises(mock_popen, executor):
    mock_popen.return_value = MockPopen(["error: target not found: nosuchpkg\n"], returncode=1)

    with pytest.raises(ShellCommandError) as excinfo:
        executor.run(CommandSpec.of("pacman", "-S", "nosuchpkg", long_running=True), description="pacman")

    assert excinfo.value.exit_code == 1
    assert "target not found" in excinfo.value.stdout

def test_long_running_heartbeat_while_silent(mock_rich_logger):
    """A command that prints nothing still gets periodic heartbeats."""
    executor = Executor(logger_instance=mock_rich_logger, heartbeat_interval=0.2)

    result = executor.run(CommandSpec.of("sh", "-c", "sleep 1; echo done", long_running=True),
                          description="silent")

    assert result.stdout == "done\n"
    assert mock_rich_logger.heartbeat.call_count >= 2
    assert "no output yet" in mock_rich_logger.heartbeat.call_args_list[0][0][0]

def test_long_running_interrupt_stops_child(mock_rich_logger):
    """An interrupt during a streamed command terminates the child before propagating."""
    executor = Executor(logger_instance=mock_rich_logger, heartbeat_interval=0.05)
    mock_rich_logger.heartbeat.side_effect = KeyboardInterrupt
    real_popen = subprocess.Popen
    started = []

    def spawn(*args, **kwargs):
        process = real_popen(*args, **kwargs)
        started.append(process)
        return process

    with patch('subprocess.Popen', side_effect=spawn):
        with pytest.raises(KeyboardInterrupt):
            executor.run(CommandSpec.of("sleep", "30", long_running=True), description="sleep")

    assert len(started) == 1
    assert started[0].poll() is not None
    mock_rich_logger.warning.assert_called()

# ----------------------------------------------------------------------
# --- Tests for probe() ---
# ----------------------------------------------------------------------

@patch('subprocess.run')
def test_probe_returns_nonzero_without_raising(mock_run, executor, mock_rich_logger):
    mock_run.return_value = MockCompletedProcess(returncode=2, stdout="", stderr="")

    result = executor.probe(CommandSpec.of("blkid", "-p", "-o", "export", "/dev/sda1"))

    assert result.exit_code == 2
    assert not result.ok
    mock_rich_logger.execution_step.assert_not_called()
