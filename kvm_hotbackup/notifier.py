"""
Run report delivery
"""
import subprocess
from abc import ABC, abstractmethod
from typing import Optional

from rich.console import Console
from rich.panel import Panel

from kvm_hotbackup.logging_config import get_logger
from kvm_hotbackup.models import BackupRun, LogEntry, Severity


SEVERITY_STYLES = {
    Severity.INFO: "white",
    Severity.WARNING: "yellow",
    Severity.ERROR: "red",
    Severity.CRITICAL: "bold white on red",
}

SUMMARY_FILE_NAME = "summary.json"


class Notifier(ABC):
    """Delivers the summary of a finished run"""

    @abstractmethod
    def notify(self, run: BackupRun, hostname: str) -> None:
        """Deliver the report of a finished run"""


class ConsoleNotifier(Notifier):
    """Echoes run log lines and the final summary to the terminal"""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    def echo(self, entry: LogEntry) -> None:
        style = SEVERITY_STYLES.get(entry.severity, "white")
        self.console.print(entry.labelled(), style=style, markup=False, highlight=False)

    def notify(self, run: BackupRun, hostname: str) -> None:
        border = "green"
        if run.has_critical:
            border = "red"
        elif run.has_failures:
            border = "yellow"
        summary = (
            f"[bold]Run:[/bold] {run.run_id}\n"
            f"[bold]Succeeded:[/bold] {run.succeeded}/{run.total}\n"
            f"[bold]Skipped:[/bold] {run.skipped}\n"
            f"[bold]Elapsed:[/bold] {run.elapsed_text}"
        )
        self.console.print(Panel(summary, title=run.summary_line(hostname), border_style=border))


class MailNotifier(Notifier):
    """Mails the run log through the local mail user agent"""

    def __init__(self, recipient: str, mail_command: str = "mail"):
        self.recipient = recipient
        self.mail_command = mail_command
        self.logger = get_logger("kvm_hotbackup.notifier")

    def notify(self, run: BackupRun, hostname: str) -> None:
        if not self.recipient:
            return
        body = "\n".join(entry.format() for entry in run.entries) + "\n"
        cmd = [self.mail_command, '-s', run.summary_line(hostname), self.recipient]
        try:
            result = subprocess.run(cmd, input=body, capture_output=True, text=True)
        except OSError as e:
            self.logger.error("Unable to send backup report", recipient=self.recipient, error=str(e))
            return
        if result.returncode != 0:
            self.logger.error("Mail delivery failed", recipient=self.recipient,
                              exit_code=result.returncode, stderr=result.stderr)
        else:
            self.logger.info("Backup report mailed", recipient=self.recipient)


class SummaryFileNotifier(Notifier):
    """Writes summary.json into the run directory"""

    def notify(self, run: BackupRun, hostname: str) -> None:
        (run.directory / SUMMARY_FILE_NAME).write_text(run.summary_json(), encoding='utf-8')
