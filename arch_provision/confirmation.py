# arch_provision/confirmation.py

import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

from arch_provision.disk import DiskPlan, format_offset
from arch_provision.progress import DEFAULT_STATE_DIR, utcnow

CONFIRMATION_PHRASE = "YES"
TOKEN_FILE_NAME = "confirmation.json"


class ConfirmationToken(BaseModel):
    """Consent to run irreversible steps against exactly one DiskPlan."""
    model_config = ConfigDict(frozen=True)

    plan_hash: str
    device: str
    issued_at: str = Field(default_factory=utcnow)
    nonce: str = Field(default_factory=lambda: secrets.token_hex(8))

    def is_valid_for(self, plan: DiskPlan) -> bool:
        return self.plan_hash == plan.content_hash()


@dataclass(frozen=True)
class Denied:
    reason: str = "Operator declined"


def issue_token(plan: DiskPlan) -> ConfirmationToken:
    return ConfirmationToken(plan_hash=plan.content_hash(), device=plan.device)


class ConfirmationGate(Protocol):
    def request_confirmation(self, plan: DiskPlan) -> Union[ConfirmationToken, Denied]:
        ...


def plan_table(plan: DiskPlan) -> Table:
    table = Table(title=f"Partition plan for {plan.device} ({plan.mode.value.upper()}, {plan.disk_size_mib}MiB)")
    table.add_column("#", justify="right", style="cyan", no_wrap=True)
    table.add_column("Role")
    table.add_column("Filesystem")
    table.add_column("Start")
    table.add_column("End")
    table.add_column("Size", justify="right")
    table.add_column("Mount")
    for number, spec in plan.numbered():
        table.add_row(
            str(number),
            spec.role.value.upper(),
            spec.filesystem,
            format_offset(spec.start_mib),
            format_offset(spec.end_mib),
            f"{spec.size_mib(plan.disk_size_mib)}MiB",
            spec.mountpoint or "-",
        )
    return table


class RichConfirmationGate:
    """
    Asks the operator on the console. Only the exact phrase (YES) counts as
    consent; anything else is a denial.
    """

    def __init__(self, console: Optional[Console] = None, summary: Optional[str] = None,
                 phrase: str = CONFIRMATION_PHRASE):
        self.console = console or Console()
        self.summary = summary
        self.phrase = phrase

    def request_confirmation(self, plan: DiskPlan) -> Union[ConfirmationToken, Denied]:
        if self.summary:
            self.console.print(self.summary)
        self.console.print(plan_table(plan))
        self.console.print(Panel(
            f"[bold]All data on {plan.device} will be permanently erased.[/bold]\n"
            f"Plan fingerprint: {plan.content_hash()[:12]}",
            title="/!\\ WARNING /!\\",
            border_style="bold red",
        ))
        answer = Prompt.ask(f"Type {self.phrase} (uppercase) to continue", console=self.console, default="")
        if answer.strip() != self.phrase:
            return Denied(f"Expected '{self.phrase}', got '{answer.strip()}'")
        return issue_token(plan)


class TokenStore:
    """Keeps the token issued by `confirm` until `run` consumes it."""

    def __init__(self, state_dir: str = DEFAULT_STATE_DIR, file_name: str = TOKEN_FILE_NAME):
        self.path = Path(state_dir) / file_name

    def save(self, token: ConfirmationToken) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(token.model_dump_json(indent=2) + "\n", encoding="utf-8")
        self.path.chmod(0o600)

    def load(self) -> Optional[ConfirmationToken]:
        if not self.path.exists():
            return None
        try:
            return ConfirmationToken.model_validate_json(self.path.read_text(encoding="utf-8"))
        except ValidationError:
            return None

    def discard(self) -> None:
        if self.path.exists():
            self.path.unlink()
