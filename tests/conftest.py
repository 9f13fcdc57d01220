from typing import Callable, List, Optional, Tuple, Union
from unittest.mock import MagicMock

import pytest

from arch_provision.models import CommandResult, CommandSpec
from arch_provision.utils.logger import RichAppLogger

Response = Union[CommandResult, Exception, Callable[[CommandSpec], CommandResult]]


class FakeRunner:
    """
    Scripted stand-in for the Executor.

    Responses are matched on an argv prefix, most recent rule first.
    Unmatched run() calls succeed; unmatched probe() calls exit 1.
    Every call is recorded.
    """

    def __init__(self):
        self.runs: List[CommandSpec] = []
        self.probes: List[CommandSpec] = []
        self._run_rules: List[Tuple[Tuple[str, ...], Response]] = []
        self._probe_rules: List[Tuple[Tuple[str, ...], Response]] = []

    def on_run(self, prefix: Tuple[str, ...], response: Response) -> "FakeRunner":
        self._run_rules.insert(0, (tuple(prefix), response))
        return self

    def on_probe(self, prefix: Tuple[str, ...], response: Response) -> "FakeRunner":
        self._probe_rules.insert(0, (tuple(prefix), response))
        return self

    @staticmethod
    def _respond(rules, spec: CommandSpec, default: CommandResult) -> CommandResult:
        argv = tuple(spec.argv)
        for prefix, response in rules:
            if argv[:len(prefix)] == prefix:
                if isinstance(response, Exception):
                    raise response
                if callable(response):
                    return response(spec)
                return response
        return default

    def run(self, spec: CommandSpec, description: Optional[str] = None) -> CommandResult:
        self.runs.append(spec)
        return self._respond(self._run_rules, spec, CommandResult(0))

    def probe(self, spec: CommandSpec) -> CommandResult:
        self.probes.append(spec)
        return self._respond(self._probe_rules, spec, CommandResult(1))

    @property
    def run_argvs(self) -> List[List[str]]:
        return [spec.argv for spec in self.runs]


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def mock_rich_logger():
    """Provides a fully-mocked RichAppLogger instance for dependency injection."""
    mock_logger = MagicMock(spec=RichAppLogger)

    mock_context_manager = MagicMock()
    mock_context_manager.__enter__.return_value = None
    mock_context_manager.__exit__.return_value = None
    mock_logger.execution_step.return_value = mock_context_manager

    return mock_logger
