"""
VirtualBox hypervisor adapter driven through VBoxManage
"""
import re
import shlex
import subprocess
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Dict, List

from kvm_hotbackup.exceptions import (
    CommitError, ConfigExportError, HypervisorError, SnapshotError, VMNotFoundError,
)
from kvm_hotbackup.hypervisor import HypervisorAdapter
from kvm_hotbackup.logging_config import get_logger, LogOperation
from kvm_hotbackup.models import DiskInfo, SnapshotHandle, VMInfo, VMState


LIST_LINE = re.compile(r'^"(?P<name>.*)" \{(?P<uuid>[0-9a-fA-F-]+)\}$')
ATTACHMENT_KEY = re.compile(r'^[^-]+-\d+-\d+$')
DISK_EXTENSIONS = {'.vdi', '.vmdk', '.vhd', '.hdd', '.qcow', '.qcow2', '.img'}
ACTIVE_STATES = {'running', 'paused', 'stuck', 'starting', 'saving', 'restoring', 'onlinesnapshotting'}


def parse_machinereadable(output: str) -> Dict[str, str]:
    """Parse `showvminfo --machinereadable` key="value" lines"""
    values = {}
    for line in output.splitlines():
        if '=' not in line:
            continue
        key, value = line.split('=', 1)
        values[key.strip().strip('"')] = value.strip().strip('"')
    return values


class VirtualBoxManager(HypervisorAdapter):
    """VirtualBox adapter.
    
    A live snapshot turns every attached disk into a read-only base with a
    differencing image on top; deleting the snapshot merges the differencing
    images back. VirtualBox merges all disks of a snapshot at once, so the
    first commit merges everything and later commits only verify.
    """
    
    config_extension = "vbox"
    
    def __init__(self, vboxmanage: str = "VBoxManage", skip_token: str = "vbox-backup::off"):
        self.vboxmanage = vboxmanage
        self.skip_token = skip_token
        self.logger = get_logger("kvm_hotbackup.vbox_manager")
    
    @property
    def name(self) -> str:
        return "virtualbox"
    
    def _run(self, *args: str) -> subprocess.CompletedProcess:
        cmd = [self.vboxmanage, *args]
        self.logger.debug("Running VBoxManage", command=' '.join(cmd))
        try:
            return subprocess.run(cmd, capture_output=True, text=True)
        except OSError as e:
            raise HypervisorError(f"Cannot run {self.vboxmanage}: {e}") from e
    
    @staticmethod
    def _error_text(result: subprocess.CompletedProcess) -> str:
        return ' '.join(result.stderr.replace('\r', '').split())
    
    def _showvminfo(self, vm: VMInfo) -> Dict[str, str]:
        result = self._run('showvminfo', vm.uuid, '--machinereadable')
        if result.returncode != 0:
            raise VMNotFoundError(f"VM '{vm.name}' ({vm.uuid}) no longer exists: "
                                  f"{self._error_text(result)}")
        return parse_machinereadable(result.stdout)
    
    @staticmethod
    def _info_from_values(uuid: str, values: Dict[str, str]) -> VMInfo:
        disks = []
        for key, value in values.items():
            if not ATTACHMENT_KEY.match(key) or value in ('', 'none', 'emptydrive'):
                continue
            if Path(value).suffix.lower() not in DISK_EXTENSIONS:
                continue
            disks.append(DiskInfo(target=key, source=value,
                                  format=Path(value).suffix.lstrip('.').lower()))
        state = values.get('VMState', '')
        return VMInfo(
            uuid=uuid,
            name=values.get('name', uuid),
            state=VMState.RUNNING if state in ACTIVE_STATES else VMState.STOPPED,
            disks=disks,
            description=values.get('description', ''),
            config_path=values.get('CfgFile', ''),
        )
    
    def list_all_vms(self) -> List[VMInfo]:
        result = self._run('list', 'vms')
        if result.returncode != 0:
            raise HypervisorError(f"VBoxManage list vms failed: {self._error_text(result)}")
        
        vms = []
        for line in result.stdout.splitlines():
            match = LIST_LINE.match(line.strip())
            if not match:
                continue
            vms.append(VMInfo(uuid=match.group('uuid'), name=match.group('name')))
        
        self.logger.info(f"Found {len(vms)} VMs", vm_count=len(vms))
        return vms
    
    def describe(self, vm: VMInfo) -> VMInfo:
        return self._info_from_values(vm.uuid, self._showvminfo(vm))
    
    def export_config(self, vm: VMInfo, portable: bool = False) -> str:
        """Return the settings file; the portable form drops MAC addresses and hardware UUID"""
        try:
            cfg_file = self._showvminfo(vm).get('CfgFile')
            if not cfg_file:
                raise ConfigExportError(f"VM '{vm.name}' has no settings file")
            text = Path(cfg_file).read_text(encoding='utf-8')
        except OSError as e:
            raise ConfigExportError(f"Cannot read settings of VM '{vm.name}': {e}") from e
        
        if not portable:
            return text
        try:
            root = ET.fromstring(text)
        except ET.ParseError as e:
            raise ConfigExportError(f"Cannot parse settings of VM '{vm.name}': {e}") from e
        for elem in root.iter():
            tag = elem.tag.rsplit('}', 1)[-1]
            if tag == 'Adapter':
                elem.attrib.pop('MACAddress', None)
            elif tag == 'Hardware':
                elem.attrib.pop('uuid', None)
        return ET.tostring(root, encoding='unicode')
    
    def create_disk_snapshot(self, vm: VMInfo, disks: List[DiskInfo],
                             snapshot_name: str) -> SnapshotHandle:
        """Take a live snapshot; VirtualBox always covers every attached disk"""
        with LogOperation(self.logger, "create_snapshot", vm_name=vm.name,
                          snapshot_name=snapshot_name):
            result = self._run('snapshot', vm.uuid, 'take', snapshot_name, '--live')
        if result.returncode != 0:
            raise SnapshotError(f"Could not create snapshot: {self._error_text(result)}")
        
        current = {d.target: d.source for d in self.describe(vm).disks}
        return SnapshotHandle(
            name=snapshot_name,
            vm_uuid=vm.uuid,
            vm_name=vm.name,
            base_paths={d.target: d.source for d in disks},
            overlay_paths={d.target: current.get(d.target, '') for d in disks},
        )
    
    def commit_snapshot(self, vm: VMInfo, snapshot: SnapshotHandle, target: str) -> None:
        if not snapshot.merged:
            with LogOperation(self.logger, "delete_snapshot", vm_name=vm.name,
                              snapshot_name=snapshot.name):
                result = self._run('snapshot', vm.uuid, 'delete', snapshot.name)
            if result.returncode != 0:
                raise CommitError(f"Could not delete snapshot '{snapshot.name}' of VM "
                                  f"'{vm.name}': {self._error_text(result)}")
        
        try:
            current = {d.target: d.source for d in self.describe(vm).disks}
        except VMNotFoundError as e:
            raise CommitError(str(e)) from e
        if current.get(target) != snapshot.base_paths[target]:
            raise CommitError(f"Disk '{target}' of VM '{vm.name}' still points at "
                              f"{current.get(target)}")
        snapshot.merged.append(target)
    
    def delete_snapshot_artifact(self, path: str) -> None:
        # Differencing images are removed by VirtualBox when the snapshot is deleted
        if path and Path(path).exists():
            super().delete_snapshot_artifact(path)
    
    def clone_vm(self, vm: VMInfo, clone_name: str, destination: str) -> None:
        with LogOperation(self.logger, "clone_vm", vm_name=vm.name, clone_name=clone_name):
            result = self._run('clonevm', vm.uuid,
                               '--options', 'keepallmacs,keepdisknames,keephwuuids',
                               '--basefolder', destination, '--name', clone_name)
        if result.returncode != 0:
            raise HypervisorError(f"Could not clone VM '{vm.name}': {self._error_text(result)}")
    
    def define_command(self, vm: VMInfo, config_file: str) -> str:
        """Put the settings file back into the machine folder, then register it there"""
        vboxmanage = shlex.quote(self.vboxmanage)
        if not vm.config_path:
            return f"{vboxmanage} registervm \"$PWD\"/{shlex.quote(config_file)}"

        settings_file = shlex.quote(vm.config_path)
        keep = shlex.quote(f"Keeping existing {vm.config_path}")
        folder = shlex.quote(str(Path(vm.config_path).parent))
        return (f"if [ -e {settings_file} ]; then echo {keep}; "
                f"else mkdir -p {folder} && cp {shlex.quote(config_file)} {settings_file}; fi\n"
                f"{vboxmanage} registervm {settings_file}")
    
    def manual_commit_command(self, vm: VMInfo, disk: DiskInfo) -> str:
        return f"{shlex.quote(self.vboxmanage)} snapshot {vm.uuid} list"
