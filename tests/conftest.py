"""
Shared fixtures: an in-memory hypervisor backed by real disk files
"""
import copy
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from kvm_hotbackup.config import BackupSettings
from kvm_hotbackup.disk_transfer import DiskTransfer
from kvm_hotbackup.exceptions import (
    CleanupWarning, CommitError, ConfigExportError, SnapshotError, VMNotFoundError,
)
from kvm_hotbackup.hypervisor import HypervisorAdapter
from kvm_hotbackup.models import BackupRun, DiskInfo, SnapshotHandle, VMInfo, VMState


class FakeHypervisor(HypervisorAdapter):
    """Hypervisor double that records every call and moves disks on and off overlays"""

    config_extension = "xml"

    def __init__(self, vms: List[VMInfo], skip_token: str = "skip-kvm-backup"):
        self.skip_token = skip_token
        self.vms: Dict[str, VMInfo] = {vm.uuid: vm for vm in vms}
        self.order = [vm.uuid for vm in vms]
        self.calls = []
        self.fail_export = set()
        self.fail_snapshot = set()
        self.fail_commit = set()
        self.vanished = set()
        self.undeletable = set()

    @property
    def name(self) -> str:
        return "fake"

    def calls_for(self, kind: str, vm_name: Optional[str] = None):
        return [c for c in self.calls if c[0] == kind and (vm_name is None or c[1] == vm_name)]

    def list_all_vms(self) -> List[VMInfo]:
        self.calls.append(("list", None))
        return [copy.deepcopy(self.vms[u]) for u in self.order]

    def describe(self, vm: VMInfo) -> VMInfo:
        self.calls.append(("describe", vm.name))
        if vm.uuid in self.vanished:
            raise VMNotFoundError(f"VM '{vm.name}' is gone")
        return copy.deepcopy(self.vms[vm.uuid])

    def export_config(self, vm: VMInfo, portable: bool = False) -> str:
        self.calls.append(("export", vm.name, portable))
        if vm.uuid in self.fail_export:
            raise ConfigExportError("dumpxml exploded")
        if vm.uuid in self.vanished:
            raise VMNotFoundError(f"VM '{vm.name}' is gone")
        host_part = "" if portable else f"<uuid>{vm.uuid}</uuid>"
        return f"<domain><name>{vm.name}</name>{host_part}</domain>"

    def create_disk_snapshot(self, vm: VMInfo, disks: List[DiskInfo],
                             snapshot_name: str) -> SnapshotHandle:
        self.calls.append(("snapshot", vm.name, [d.target for d in disks]))
        if vm.uuid in self.fail_snapshot:
            raise SnapshotError("not enough space")
        live = self.vms[vm.uuid]
        handle = SnapshotHandle(name=snapshot_name, vm_uuid=vm.uuid, vm_name=vm.name)
        wanted = {d.target for d in disks}
        for disk in live.disks:
            if disk.target not in wanted:
                continue
            overlay = f"{disk.source}.{snapshot_name}"
            Path(overlay).write_bytes(b"")
            handle.base_paths[disk.target] = disk.source
            handle.overlay_paths[disk.target] = overlay
            disk.source = overlay
        return handle

    def commit_snapshot(self, vm: VMInfo, snapshot: SnapshotHandle, target: str) -> None:
        self.calls.append(("commit", vm.name, target))
        if (vm.uuid, target) in self.fail_commit:
            raise CommitError(f"blockcommit failed on {target}")
        for disk in self.vms[vm.uuid].disks:
            if disk.target == target:
                disk.source = snapshot.base_paths[target]
        snapshot.merged.append(target)

    def delete_snapshot_artifact(self, path: str) -> None:
        self.calls.append(("delete_artifact", path))
        if path in self.undeletable:
            raise CleanupWarning(f"cannot remove {path}")
        super().delete_snapshot_artifact(path)

    def clone_vm(self, vm: VMInfo, clone_name: str, destination: str) -> None:
        self.calls.append(("clone", vm.name, clone_name))

    def define_command(self, vm: VMInfo, config_file: str) -> str:
        return f"echo defining {config_file}"

    def manual_commit_command(self, vm: VMInfo, disk: DiskInfo) -> str:
        return f"virsh blockcommit {vm.name} {disk.target} --active --pivot --wait"


@pytest.fixture
def images_dir(tmp_path):
    path = tmp_path / "images"
    path.mkdir()
    return path


@pytest.fixture
def backup_root(tmp_path):
    path = tmp_path / "backups"
    path.mkdir()
    return path


@pytest.fixture
def make_vm(images_dir):
    """Build a VM whose disks exist as small files"""
    counter = {'n': 0}

    def factory(name: str, running: bool = False, disk_count: int = 1,
                description: str = "", title: str = "", fmt: str = "qcow2") -> VMInfo:
        counter['n'] += 1
        disks = []
        for i in range(disk_count):
            target = f"vd{chr(ord('a') + i)}"
            path = images_dir / f"{name}-{target}.{fmt}"
            path.write_bytes(f"{name}:{target}:".encode() * 64)
            disks.append(DiskInfo(target=target, source=str(path), format=fmt))
        return VMInfo(
            uuid=f"00000000-0000-0000-0000-{counter['n']:012d}",
            name=name,
            state=VMState.RUNNING if running else VMState.STOPPED,
            disks=disks,
            title=title,
            description=description,
        )

    return factory


@pytest.fixture
def settings_for(backup_root):
    def factory(**overrides) -> BackupSettings:
        values = dict(
            backup_root=str(backup_root),
            keep_backups_max_days=7,
            email_log_to="",
            output_to_stdout=False,
            shrink_disk_images=False,
            parallel_vms=1,
        )
        values.update(overrides)
        return BackupSettings(**values)

    return factory


@pytest.fixture
def run(backup_root):
    return BackupRun.create(backup_root)


@pytest.fixture
def transfer():
    return DiskTransfer(qemu_img="qemu-img", cp="cp")
