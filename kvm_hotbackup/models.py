"""
Core models for KVM hot-backup
"""
import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Any

from kvm_hotbackup.exceptions import UsageError
from kvm_hotbackup.logging_config import get_logger


RUN_ID_FORMAT = "%Y%m%d.%H%M%S"
LOG_FILE_NAME = "log.txt"


class VMState(Enum):
    """Virtual Machine run state"""
    RUNNING = "running"
    STOPPED = "stopped"


class BackupState(Enum):
    """States of the per-VM hot-backup protocol"""
    START = "start"
    XML_EXPORTED = "xml_exported"
    ACTIVE_PATH = "active_path"
    INACTIVE_PATH = "inactive_path"
    DISKS_TRANSFERRED = "disks_transferred"
    COMPACTED = "compacted"
    RESTORE_ARTIFACTS_WRITTEN = "restore_artifacts_written"
    DONE = "done"
    FAILED = "failed"


class VMOutcome(Enum):
    """Classification of one VM's backup attempt"""
    OK = "ok"
    DEGRADED = "degraded"
    FAILED = "failed"
    CRITICAL = "critical"
    SKIPPED = "skipped"
    VANISHED = "vanished"


class Severity(Enum):
    """Severity marker used in the run log"""
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"
    
    @property
    def level(self) -> int:
        return getattr(logging, self.value)


@dataclass
class DiskInfo:
    """A disk attached to a VM"""
    target: str
    source: str
    format: Optional[str] = None
    #: False for network or unresolvable storage that has no local file to copy
    copyable: bool = True
    
    @property
    def filename(self) -> str:
        return Path(self.source).name
    
    @property
    def directory(self) -> str:
        return str(Path(self.source).parent)


@dataclass
class VMInfo:
    """Virtual Machine information as observed during a backup"""
    uuid: str
    name: str
    state: VMState = VMState.STOPPED
    disks: List[DiskInfo] = field(default_factory=list)
    title: str = ""
    description: str = ""
    #: Settings file location on the host, where the hypervisor keeps one
    config_path: str = ""
    
    @property
    def is_running(self) -> bool:
        return self.state == VMState.RUNNING
    
    def metadata_fields(self) -> List[str]:
        """Free-text fields searched for the skip convention"""
        return [self.name, self.title, self.description]


@dataclass
class SnapshotHandle:
    """A disk-only snapshot created for one backup attempt"""
    name: str
    vm_uuid: str
    vm_name: str
    base_paths: Dict[str, str] = field(default_factory=dict)
    overlay_paths: Dict[str, str] = field(default_factory=dict)
    merged: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.now)
    
    @property
    def targets(self) -> List[str]:
        return list(self.base_paths)
    
    @property
    def pending(self) -> List[str]:
        """Targets whose overlay has not been merged back yet"""
        return [t for t in self.base_paths if t not in self.merged]


@dataclass
class LogEntry:
    """One line of a run log"""
    timestamp: datetime
    severity: Severity
    message: str
    vm_name: Optional[str] = None
    
    def format(self) -> str:
        return f"{self.timestamp.strftime(RUN_ID_FORMAT)}\t\t{self.severity.value}\t{self.message}"

    def labelled(self) -> str:
        """Message prefixed with its severity, except for plain info lines"""
        if self.severity == Severity.INFO:
            return self.message
        return f"{self.severity.value}: {self.message}"


@dataclass
class VMBackupResult:
    """Result of one VM's backup attempt"""
    vm_uuid: str
    vm_name: str
    outcome: VMOutcome = VMOutcome.FAILED
    state: BackupState = BackupState.START
    was_running: Optional[bool] = None
    directory: Optional[Path] = None
    disks_copied: List[str] = field(default_factory=list)
    disks_failed: List[str] = field(default_factory=list)
    disks_compacted: List[str] = field(default_factory=list)
    commits: List[str] = field(default_factory=list)
    restore_scripts: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    start_time: datetime = field(default_factory=datetime.now)
    end_time: Optional[datetime] = None
    
    @property
    def duration_seconds(self) -> Optional[float]:
        if self.end_time and self.start_time:
            return (self.end_time - self.start_time).total_seconds()
        return None
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            'vm_uuid': self.vm_uuid,
            'vm_name': self.vm_name,
            'outcome': self.outcome.value,
            'state': self.state.value,
            'was_running': self.was_running,
            'disks_copied': self.disks_copied,
            'disks_failed': self.disks_failed,
            'disks_compacted': self.disks_compacted,
            'commits': self.commits,
            'restore_scripts': self.restore_scripts,
            'errors': self.errors,
            'warnings': self.warnings,
            'duration_seconds': self.duration_seconds,
        }


def format_elapsed(seconds: float) -> str:
    """Format a duration as '01h 02m 03s'"""
    seconds = int(seconds)
    return f"{seconds // 3600:02d}h {seconds % 3600 // 60:02d}m {seconds % 60:02d}s"


class BackupRun:
    """Context of one orchestrator invocation.
    
    Owns the run directory, the structured run log and the counters used for
    reporting. Every component receives the run explicitly and logs through
    it; entries are appended to ``log.txt`` as they happen so that an
    interrupted run still leaves a readable log behind.
    """
    
    def __init__(self, run_id: str, root: Path, start_time: Optional[datetime] = None,
                 echo: Optional[Callable[[LogEntry], None]] = None):
        self.run_id = run_id
        self.root = Path(root)
        self.directory = self.root / run_id
        self.log_path = self.directory / LOG_FILE_NAME
        self.start_time = start_time or datetime.now()
        self.end_time: Optional[datetime] = None
        self.echo = echo
        
        self.entries: List[LogEntry] = []
        self.results: List[VMBackupResult] = []
        self.total = 0
        self.skipped = 0
        self.succeeded = 0
        self.fatal_error: Optional[str] = None
        
        self._lock = threading.Lock()
        self.logger = get_logger("kvm_hotbackup.run")
    
    @classmethod
    def create(cls, root, now: Optional[datetime] = None,
               echo: Optional[Callable[[LogEntry], None]] = None) -> 'BackupRun':
        """Create the run and its directory under the backup root"""
        now = now or datetime.now()
        run = cls(now.strftime(RUN_ID_FORMAT), Path(root), start_time=now, echo=echo)
        try:
            run.directory.mkdir(parents=False, exist_ok=False)
        except FileExistsError:
            raise UsageError(f"Backup directory {run.directory} already exists")
        except OSError as e:
            raise UsageError(f"Cannot create backup directory {run.directory}: {e}")
        return run
    
    # Logging
    
    def log(self, severity: Severity, message: str, vm: Optional[str] = None) -> LogEntry:
        entry = LogEntry(datetime.now(), severity, message, vm_name=vm)
        with self._lock:
            self.entries.append(entry)
            try:
                if self.directory.is_dir():
                    with open(self.log_path, 'a', encoding='utf-8') as f:
                        f.write(entry.format() + "\n")
            except OSError as e:
                self.logger.error("Unable to write run log", path=str(self.log_path),
                                  error=str(e))
        self.logger.log(severity.level, message, run_id=self.run_id, vm_name=vm)
        if self.echo is not None:
            self.echo(entry)
        return entry
    
    def info(self, message: str, vm: Optional[str] = None) -> LogEntry:
        return self.log(Severity.INFO, message, vm)
    
    def warning(self, message: str, vm: Optional[str] = None) -> LogEntry:
        return self.log(Severity.WARNING, message, vm)

    def error(self, message: str, vm: Optional[str] = None) -> LogEntry:
        return self.log(Severity.ERROR, message, vm)

    def critical(self, message: str, vm: Optional[str] = None) -> LogEntry:
        return self.log(Severity.CRITICAL, message, vm)
    
    def entries_at(self, severity: Severity) -> List[LogEntry]:
        return [e for e in self.entries if e.severity == severity]
    
    # Counting
    
    def vm_directory(self, vm_name: str) -> Path:
        return self.directory / vm_name
    
    def count_vm(self) -> None:
        with self._lock:
            self.total += 1
    
    def count_skipped(self) -> None:
        with self._lock:
            self.skipped += 1
    
    def record(self, result: VMBackupResult, accept_degraded: bool = False) -> None:
        """Add a VM result, counting it as succeeded when acceptable"""
        with self._lock:
            self.results.append(result)
            if result.outcome == VMOutcome.OK or (
                    accept_degraded and result.outcome == VMOutcome.DEGRADED):
                self.succeeded += 1
    
    def result_for(self, vm_name: str) -> Optional[VMBackupResult]:
        for result in self.results:
            if result.vm_name == vm_name:
                return result
        return None
    
    # Reporting
    
    def finalize(self, now: Optional[datetime] = None) -> None:
        self.end_time = now or datetime.now()
    
    @property
    def duration_seconds(self) -> Optional[float]:
        if self.end_time and self.start_time:
            return (self.end_time - self.start_time).total_seconds()
        return None
    
    @property
    def elapsed_text(self) -> str:
        return format_elapsed(self.duration_seconds or 0)
    
    @property
    def has_failures(self) -> bool:
        if self.fatal_error:
            return True
        return any(r.outcome in (VMOutcome.FAILED, VMOutcome.CRITICAL, VMOutcome.DEGRADED)
                   for r in self.results)
    
    @property
    def has_critical(self) -> bool:
        return any(r.outcome == VMOutcome.CRITICAL for r in self.results)
    
    def summary_line(self, hostname: str) -> str:
        return (f"{hostname} VM backup report: {self.succeeded}/{self.total} ok, "
                f"{self.skipped} skipped")
    
    def to_summary(self) -> Dict[str, Any]:
        return {
            'run_id': self.run_id,
            'directory': str(self.directory),
            'start_time': self.start_time.isoformat(),
            'end_time': self.end_time.isoformat() if self.end_time else None,
            'duration_seconds': self.duration_seconds,
            'fatal_error': self.fatal_error,
            'counts': {
                'succeeded': self.succeeded,
                'total': self.total,
                'skipped': self.skipped,
            },
            'vm_results': [r.to_dict() for r in self.results],
        }
    
    def summary_json(self) -> str:
        return json.dumps(self.to_summary(), indent=2)
