"""
Hypervisor adapter interface used by the backup protocol
"""
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List

from kvm_hotbackup.exceptions import CleanupWarning
from kvm_hotbackup.models import DiskInfo, SnapshotHandle, VMInfo


class HypervisorAdapter(ABC):
    """Abstract control surface of one host's hypervisor.
    
    Implementations raise the typed errors from ``kvm_hotbackup.exceptions``;
    they never return sentinel values for failures.
    """
    
    #: Substring that excludes a VM from backups when found in its metadata.
    skip_token: str = ""
    #: Suffix of exported configuration files, e.g. ``xml``.
    config_extension: str = "xml"
    
    @property
    @abstractmethod
    def name(self) -> str:
        """Backend name (e.g. 'libvirt', 'virtualbox')"""
    
    def connect(self) -> None:
        """Open the hypervisor connection"""
    
    def disconnect(self) -> None:
        """Close the hypervisor connection"""
    
    def __enter__(self):
        self.connect()
        return self
    
    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()
    
    @abstractmethod
    def list_all_vms(self) -> List[VMInfo]:
        """Enumerate every defined VM, running or stopped"""
    
    @abstractmethod
    def describe(self, vm: VMInfo) -> VMInfo:
        """Return fresh information for a VM; raises VMNotFoundError"""
    
    @abstractmethod
    def export_config(self, vm: VMInfo, portable: bool = False) -> str:
        """Return the VM definition in local or portable form"""
    
    def is_skip_marked(self, vm: VMInfo) -> bool:
        """Case-sensitive substring match of the skip token on free-text metadata.
        
        This is a naming convention, not structured tagging.
        """
        if not self.skip_token:
            return False
        return any(self.skip_token in text for text in vm.metadata_fields() if text)
    
    @abstractmethod
    def create_disk_snapshot(self, vm: VMInfo, disks: List[DiskInfo],
                             snapshot_name: str) -> SnapshotHandle:
        """Atomically snapshot exactly the given disks of a running VM"""
    
    @abstractmethod
    def commit_snapshot(self, vm: VMInfo, snapshot: SnapshotHandle, target: str) -> None:
        """Merge one disk's overlay back into its base and pivot; blocks until done"""
    
    def delete_snapshot_artifact(self, path: str) -> None:
        """Remove a merged overlay file"""
        try:
            Path(path).unlink(missing_ok=True)
        except OSError as e:
            raise CleanupWarning(f"Unable to remove {path}: {e}") from e
    
    @abstractmethod
    def clone_vm(self, vm: VMInfo, clone_name: str, destination: str) -> None:
        """Clone a VM into a destination directory"""
    
    @abstractmethod
    def define_command(self, vm: VMInfo, config_file: str) -> str:
        """Shell commands that redefine a VM from an exported configuration file"""
    
    @abstractmethod
    def manual_commit_command(self, vm: VMInfo, disk: DiskInfo) -> str:
        """Shell command an operator can run to merge an orphaned overlay"""
