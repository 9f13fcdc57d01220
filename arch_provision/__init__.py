# arch_provision/__init__.py

from .utils.exceptions import ShellCommandError
from .utils.exceptions import CommandNotFoundError
from .utils.exceptions import CommandTimeoutError
from .utils.exceptions import ConfigError
from .utils.exceptions import PlanError
from .utils.exceptions import GraphError
from .utils.exceptions import ExecError

__all__ = [
    "ShellCommandError",
    "CommandNotFoundError",
    "CommandTimeoutError",
    "ConfigError",
    "PlanError",
    "GraphError",
    "ExecError",
]

# Versioning
__version__ = "0.1.0"
