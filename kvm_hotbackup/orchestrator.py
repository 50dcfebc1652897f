"""
Fleet-level backup orchestration, retention sweep and run locking
"""
import asyncio
import fcntl
import os
import shutil
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from kvm_hotbackup.backup_manager import VMBackup, has_backup_marker
from kvm_hotbackup.config import BackupSettings
from kvm_hotbackup.disk_transfer import DiskTransfer
from kvm_hotbackup.exceptions import HypervisorError, RunLockError, UsageError, VMNotFoundError
from kvm_hotbackup.hypervisor import HypervisorAdapter
from kvm_hotbackup.logging_config import get_logger, LogOperation
from kvm_hotbackup.models import (
    BackupRun, DiskInfo, LogEntry, VMBackupResult, VMInfo, VMOutcome,
)
from kvm_hotbackup.notifier import Notifier
from kvm_hotbackup.restore_scripts import RestoreScriptWriter


LOCK_FILE_NAME = ".kvm-hotbackup.lock"
SECONDS_PER_DAY = 86400

logger = get_logger("kvm_hotbackup.orchestrator")


def create_adapter(settings: BackupSettings) -> HypervisorAdapter:
    """Build the hypervisor adapter named in the settings"""
    if settings.hypervisor == "libvirt":
        from kvm_hotbackup.vm_manager import LibvirtManager
        return LibvirtManager(
            uri=settings.libvirt_uri,
            skip_token=settings.effective_skip_token,
            commit_timeout=settings.commit_timeout,
            poll_interval=settings.commit_poll_interval,
        )
    if settings.hypervisor == "virtualbox":
        from kvm_hotbackup.vbox_manager import VirtualBoxManager
        return VirtualBoxManager(
            vboxmanage=settings.vboxmanage_path,
            skip_token=settings.effective_skip_token,
        )
    raise UsageError(f"Unknown hypervisor '{settings.hypervisor}'")


def validate_destination(root) -> Path:
    root = Path(root)
    if not root.is_dir():
        raise UsageError(f"{root} is not a valid destination directory.")
    return root


class RunLock:
    """Advisory lock on the backup root held for the duration of a run"""

    def __init__(self, root: Path):
        self.path = Path(root) / LOCK_FILE_NAME
        self._fd: Optional[int] = None

    def acquire(self) -> None:
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            raise RunLockError(f"Another backup run holds {self.path}")
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        self._fd = fd

    def release(self) -> None:
        if self._fd is not None:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
            os.close(self._fd)
            self._fd = None

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()


def _creation_time(path: Path) -> float:
    return path.stat().st_ctime


def sweep_old_backups(root: Path, max_days: int, run: Optional[BackupRun] = None,
                      now: Optional[float] = None,
                      timestamp_of: Callable[[Path], float] = _creation_time) -> List[Path]:
    """Remove backup-set directories directly under root older than max_days.

    A max_days below 1 disables the sweep. Directories are removed whole.
    """
    if max_days < 1:
        return []

    now = time.time() if now is None else now
    cutoff = max_days * SECONDS_PER_DAY
    current = run.directory if run is not None else None

    expired = []
    for path in sorted(Path(root).iterdir()):
        if not path.is_dir() or path.is_symlink() or path == current:
            continue
        if now - timestamp_of(path) > cutoff:
            expired.append(path)

    if not expired:
        return []

    message = (f"Deleting backups older than {max_days} day(s): "
               f"{' '.join(str(p) for p in expired)}")
    if run is not None:
        run.info(message)
    else:
        logger.info(message)

    removed = []
    for path in expired:
        try:
            shutil.rmtree(path)
        except OSError as e:
            if run is not None:
                run.error(f"Unable to delete old backup {path}: {e}")
            else:
                logger.error("Unable to delete old backup", path=str(path), error=str(e))
            continue
        removed.append(path)
    return removed


def find_orphaned_overlays(vms: List[VMInfo], marker: str) -> List[Tuple[VMInfo, DiskInfo]]:
    """Disks whose active source is a leftover backup overlay"""
    return [(vm, disk) for vm in vms for disk in vm.disks if has_backup_marker(disk, marker)]


class BackupOrchestrator:
    """Backs up every VM of one host into a new backup set"""

    def __init__(self, settings: BackupSettings, adapter: HypervisorAdapter,
                 transfer: Optional[DiskTransfer] = None,
                 notifiers: Optional[List[Notifier]] = None,
                 echo: Optional[Callable[[LogEntry], None]] = None):
        self.settings = settings
        self.adapter = adapter
        self.transfer = transfer or DiskTransfer(qemu_img=settings.qemu_img_path,
                                                    cp=settings.cp_path)
        self.restore_writer = RestoreScriptWriter(adapter)
        self.notifiers = notifiers or []
        self.echo = echo

    async def execute_backup(self, now: Optional[datetime] = None) -> BackupRun:
        """Run one backup pass over all VMs; per-VM failures never abort the run"""
        root = validate_destination(self.settings.backup_root)

        with RunLock(root):
            run = BackupRun.create(root, now=now, echo=self.echo)
            with LogOperation(logger, "execute_backup", run_id=run.run_id):
                run.info("Starting backup.")
                run.info(f"Destination directory: {run.directory}")
                try:
                    vms = await asyncio.to_thread(self.adapter.list_all_vms)
                except HypervisorError as e:
                    run.fatal_error = str(e)
                    run.error(f"Unable to enumerate VMs: {e}")
                    vms = []

                self._report_orphans(run, vms)
                await self._process_all(run, vms)

                run.info(f"Backup finished: {run.succeeded}/{run.total} backed up, "
                         f"{run.skipped} skipped.")
                sweep_old_backups(root, self.settings.keep_backups_max_days, run)

                run.finalize()
                run.info(f"Completed in {run.elapsed_text}")

        self._notify(run)
        return run

    def _report_orphans(self, run: BackupRun, vms: List[VMInfo]) -> None:
        for vm, disk in find_orphaned_overlays(vms, self.settings.backup_marker):
            run.critical(
                f"VM '{vm.name}' is still running on backup overlay {disk.source} for target "
                f"'{disk.target}' from an interrupted backup. Merge it manually with: "
                f"{self.adapter.manual_commit_command(vm, disk)}", vm=vm.name)

    async def _process_all(self, run: BackupRun, vms: List[VMInfo]) -> None:
        semaphore = asyncio.Semaphore(max(1, self.settings.parallel_vms))
        seen = set()
        unique = []
        for vm in vms:
            if vm.uuid in seen:
                continue
            seen.add(vm.uuid)
            unique.append(vm)

        async def worker(vm: VMInfo) -> None:
            async with semaphore:
                await self._process_vm(run, vm)

        await asyncio.gather(*(worker(vm) for vm in unique))

    async def _process_vm(self, run: BackupRun, vm: VMInfo) -> None:
        run.count_vm()
        try:
            current = await asyncio.to_thread(self.adapter.describe, vm)
        except (VMNotFoundError, HypervisorError) as e:
            run.error(f"VM '{vm.name}' disappeared before it could be backed up: {e}", vm=vm.name)
            run.record(VMBackupResult(vm_uuid=vm.uuid, vm_name=vm.name,
                                      outcome=VMOutcome.VANISHED, errors=[str(e)]))
            return

        if self.adapter.is_skip_marked(current):
            run.count_skipped()
            run.info(f"Skipping backup of VM '{current.name}'.", vm=current.name)
            run.record(VMBackupResult(vm_uuid=current.uuid, vm_name=current.name,
                                      outcome=VMOutcome.SKIPPED))
            return

        backup = VMBackup(
            adapter=self.adapter,
            transfer=self.transfer,
            restore_writer=self.restore_writer,
            run=run,
            vm=current,
            shrink=self.settings.shrink_disk_images,
            marker=self.settings.backup_marker,
        )
        result = await asyncio.to_thread(backup.run)
        run.record(result, accept_degraded=self.settings.count_degraded_as_success)
        if result.outcome in (VMOutcome.FAILED, VMOutcome.CRITICAL, VMOutcome.VANISHED):
            run.error(f"Backup of VM '{current.name}' failed", vm=current.name)

    def _notify(self, run: BackupRun) -> None:
        hostname = self.settings.hostname or "localhost"
        for notifier in self.notifiers:
            try:
                notifier.notify(run, hostname)
            except Exception as e:
                logger.error("Notifier failed", notifier=type(notifier).__name__, error=str(e))
