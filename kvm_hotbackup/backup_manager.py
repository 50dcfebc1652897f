"""
Per-VM hot-backup state machine
"""
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from kvm_hotbackup.disk_transfer import DiskTransfer
from kvm_hotbackup.exceptions import (
    CleanupWarning, CommitError, CompactionError, ConfigExportError,
    CopyError, SnapshotError, VMNotFoundError,
)
from kvm_hotbackup.hypervisor import HypervisorAdapter
from kvm_hotbackup.logging_config import get_logger
from kvm_hotbackup.models import (
    BackupRun, BackupState, DiskInfo, SnapshotHandle, VMBackupResult, VMInfo, VMOutcome,
)
from kvm_hotbackup.restore_scripts import (
    LOCAL_CONFIG, PORTABLE_CONFIG, RestoreScriptWriter, config_filename,
)


TRANSITIONS: Dict[BackupState, set] = {
    BackupState.START: {BackupState.XML_EXPORTED, BackupState.FAILED},
    BackupState.XML_EXPORTED: {BackupState.ACTIVE_PATH, BackupState.INACTIVE_PATH,
                               BackupState.FAILED},
    BackupState.ACTIVE_PATH: {BackupState.DISKS_TRANSFERRED, BackupState.FAILED},
    BackupState.INACTIVE_PATH: {BackupState.DISKS_TRANSFERRED, BackupState.FAILED},
    BackupState.DISKS_TRANSFERRED: {BackupState.COMPACTED,
                                    BackupState.RESTORE_ARTIFACTS_WRITTEN, BackupState.FAILED},
    BackupState.COMPACTED: {BackupState.RESTORE_ARTIFACTS_WRITTEN, BackupState.FAILED},
    BackupState.RESTORE_ARTIFACTS_WRITTEN: {BackupState.DONE, BackupState.FAILED},
    BackupState.DONE: set(),
    BackupState.FAILED: set(),
}


class InvalidTransition(RuntimeError):
    """The state machine was driven along an edge that does not exist"""


def snapshot_name_for(marker: str, run_id: str) -> str:
    """Snapshot name carrying the backup-in-progress marker, e.g. kvm-backup-20240101.120000"""
    return f"{marker.lstrip('.')}-{run_id}"


def has_backup_marker(disk: DiskInfo, marker: str) -> bool:
    return marker in disk.source


class VMBackup:
    """Drives one VM through the hot-backup protocol.

    Running VMs get a disk-only snapshot of all disks in one call; the
    original images are copied while the VM writes to the overlays, then
    every overlay is committed back and the VM pivoted onto its original
    images. Stopped VMs are copied directly. Copies of qcow2 images can be
    compacted afterwards, and restore scripts are always written once the
    disks have been transferred.

    Every error is converted into the returned ``VMBackupResult``; ``run()``
    never raises for a per-VM failure.
    """

    def __init__(self, adapter: HypervisorAdapter, transfer: DiskTransfer,
                 restore_writer: RestoreScriptWriter, run: BackupRun, vm: VMInfo,
                 shrink: bool = True, marker: str = ".kvm-backup"):
        self.adapter = adapter
        self.transfer = transfer
        self.restore_writer = restore_writer
        self.run_context = run
        self.vm = vm
        self.shrink = shrink
        self.marker = marker

        self.state = BackupState.START
        self.degraded = False
        self.snapshot: Optional[SnapshotHandle] = None
        self.copies: List[Tuple[str, DiskInfo]] = []
        self.result = VMBackupResult(vm_uuid=vm.uuid, vm_name=vm.name,
                                     was_running=vm.is_running)
        self.logger = get_logger("kvm_hotbackup.backup_manager")

    @property
    def vm_dir(self) -> Path:
        return self.run_context.vm_directory(self.vm.name)

    def _advance(self, new_state: BackupState) -> None:
        if new_state not in TRANSITIONS[self.state]:
            raise InvalidTransition(f"{self.state.value} -> {new_state.value}")
        self.logger.debug("State transition", vm_name=self.vm.name,
                          from_state=self.state.value, to_state=new_state.value)
        self.state = new_state
        self.result.state = new_state

    def _error(self, message: str) -> None:
        self.result.errors.append(message)
        self.run_context.error(message, vm=self.vm.name)

    def _degrade(self, message: str) -> None:
        self.degraded = True
        self._error(message)

    def _fail(self, message: str, outcome: VMOutcome = VMOutcome.FAILED) -> VMBackupResult:
        if outcome == VMOutcome.CRITICAL:
            self.result.errors.append(message)
            self.run_context.critical(message, vm=self.vm.name)
        else:
            self._error(message)
        self._advance(BackupState.FAILED)
        return self._finish(outcome)

    def _finish(self, outcome: VMOutcome) -> VMBackupResult:
        self.result.outcome = outcome
        self.result.end_time = datetime.now()
        return self.result

    def run(self) -> VMBackupResult:
        """Execute the protocol and return the classified result"""
        try:
            return self._run()
        except Exception as e:
            self.logger.error("Unexpected error during VM backup", vm_name=self.vm.name,
                              state=self.state.value, error=str(e), exc_info=True)
            if self.state in (BackupState.FAILED, BackupState.DONE):
                return self._finish(self.result.outcome)
            if self.snapshot is not None and self.snapshot.pending:
                return self._fail(
                    f"Backup of VM '{self.vm.name}' aborted with snapshot '{self.snapshot.name}' "
                    f"still active on target(s) {', '.join(self.snapshot.pending)}: {e}",
                    VMOutcome.CRITICAL)
            return self._fail(f"Backup of VM '{self.vm.name}' failed: {e}")

    def _run(self) -> VMBackupResult:
        vm_name = self.vm.name
        self.vm_dir.mkdir(parents=True, exist_ok=True)
        self.result.directory = self.vm_dir

        # Entry guard: both definitions must be exported
        self.run_context.info(f"Backing up XML for VM '{vm_name}'...", vm=vm_name)
        try:
            self._export_configs()
        except VMNotFoundError as e:
            self._error(f"VM '{vm_name}' vanished before it could be backed up: {e}")
            self._advance(BackupState.FAILED)
            return self._finish(VMOutcome.VANISHED)
        except (ConfigExportError, OSError) as e:
            return self._fail(f"dumpxml failed for VM '{vm_name}'! {e}")
        self._advance(BackupState.XML_EXPORTED)

        marked = [d.source for d in self.vm.disks if has_backup_marker(d, self.marker)]
        if marked:
            return self._fail(f"At least one source for VM '{vm_name}' appears to be an "
                              f"intermediate backup source - cannot proceed! ({', '.join(marked)})")

        if self.vm.is_running:
            self._advance(BackupState.ACTIVE_PATH)
            failure = self._backup_active()
            if failure is not None:
                return failure
        else:
            self._advance(BackupState.INACTIVE_PATH)
            self._backup_inactive()
        self._advance(BackupState.DISKS_TRANSFERRED)

        if self.shrink:
            self._compact_copies()
            self._advance(BackupState.COMPACTED)

        self._write_restore_scripts()
        self._advance(BackupState.RESTORE_ARTIFACTS_WRITTEN)

        self._advance(BackupState.DONE)
        if self.degraded:
            self.run_context.warning(f"Backup of VM '{vm_name}' completed with errors.", vm=vm_name)
            return self._finish(VMOutcome.DEGRADED)
        self.run_context.info(f"Backup of VM '{vm_name}' done.", vm=vm_name)
        return self._finish(VMOutcome.OK)

    def _export_configs(self) -> None:
        ext = self.adapter.config_extension
        for form, portable in ((LOCAL_CONFIG, False), (PORTABLE_CONFIG, True)):
            xml = self.adapter.export_config(self.vm, portable=portable)
            (self.vm_dir / config_filename(form, ext)).write_text(xml, encoding='utf-8')

    def _backup_name(self, disk: DiskInfo) -> str:
        """File name of a disk copy; the base name unless two disks share it"""
        same_name = [d for d in self.vm.disks if d.filename == disk.filename]
        if len(same_name) > 1:
            return f"{disk.target}-{disk.filename}"
        return disk.filename

    def _copy_disks(self, disks: List[DiskInfo]) -> None:
        """Copy each disk, continuing past individual failures"""
        for disk in disks:
            name = self._backup_name(disk)
            try:
                self.transfer.copy(disk.source, str(self.vm_dir / name))
            except CopyError as e:
                self.result.disks_failed.append(disk.target)
                self._degrade(f"Unable to back up disk '{name}' for VM '{self.vm.name}'. {e}")
                continue
            self.copies.append((name, disk))
            self.result.disks_copied.append(disk.target)

    def _skip_uncopyable(self, disks: List[DiskInfo]) -> List[DiskInfo]:
        """Degrade for every disk without a local file and return the others"""
        copyable = []
        for disk in disks:
            if disk.copyable:
                copyable.append(disk)
                continue
            self.result.disks_failed.append(disk.target)
            self._degrade(f"Disk '{disk.target}' of VM '{self.vm.name}' has no local source "
                          f"({disk.source}) and was not backed up.")
        return copyable

    def _backup_inactive(self) -> None:
        self.run_context.info(f"Backing up disk image(s) for inactive VM '{self.vm.name}'...",
                              vm=self.vm.name)
        self._copy_disks(self._skip_uncopyable(self.vm.disks))

    def _backup_active(self) -> Optional[VMBackupResult]:
        vm_name = self.vm.name
        disks = self._skip_uncopyable(self.vm.disks)
        if not disks:
            self.run_context.warning(f"VM '{vm_name}' has no disks to back up.", vm=vm_name)
            return None

        self.run_context.info(f"Creating disk snapshot(s) for VM '{vm_name}'...", vm=vm_name)
        try:
            self.snapshot = self.adapter.create_disk_snapshot(
                self.vm, disks, snapshot_name_for(self.marker, self.run_context.run_id))
        except (SnapshotError, VMNotFoundError) as e:
            return self._fail(f"Failed to create snapshot for VM '{vm_name}'! {e}")

        # The VM writes to the overlays from here on.
        # Nothing raised while copying may skip the merge.
        try:
            self.run_context.info(f"Backing up disk snapshot(s) for VM '{vm_name}'...", vm=vm_name)
            self._copy_disks(disks)
        finally:
            failure = self._merge_snapshot()
        return failure

    def _merge_snapshot(self) -> Optional[VMBackupResult]:
        vm_name = self.vm.name
        self.run_context.info(f"Completing backup for VM '{vm_name}'...", vm=vm_name)
        for target in self.snapshot.targets:
            try:
                self.adapter.commit_snapshot(self.vm, self.snapshot, target)
            except CommitError as e:
                return self._fail(
                    f"Unable to merge changes for target '{target}' of VM '{vm_name}' - "
                    f"data corruption may have occurred! {e}", VMOutcome.CRITICAL)
            self.result.commits.append(target)

        for target, overlay in self.snapshot.overlay_paths.items():
            if not overlay or overlay == self.snapshot.base_paths.get(target):
                continue
            try:
                self.adapter.delete_snapshot_artifact(overlay)
            except CleanupWarning as e:
                self.result.warnings.append(str(e))
                self.run_context.warning(
                    f"Unable to clean up merged backup changes for VM '{vm_name}'! {e}",
                    vm=vm_name)
        return None

    def _compact_copies(self) -> None:
        compactable = [(name, disk) for name, disk in self.copies
                       if self.transfer.is_compactable(name, disk.format)]
        if not compactable:
            return
        self.run_context.info("Shrinking qcow2 disk image(s)...", vm=self.vm.name)
        for name, disk in compactable:
            try:
                self.transfer.compact(str(self.vm_dir / name), disk.format)
            except CompactionError as e:
                self._degrade(f"Unable to shrink disk '{name}' for VM '{self.vm.name}'. "
                              f"The uncompacted copy was kept. {e}")
                continue
            self.result.disks_compacted.append(disk.target)

    def _write_restore_scripts(self) -> None:
        try:
            paths = self.restore_writer.write(self.vm, self.vm_dir, self.copies)
        except OSError as e:
            self._degrade(f"Unable to write restore scripts for VM '{self.vm.name}'. {e}")
            return
        self.result.restore_scripts = [p.name for p in paths]
