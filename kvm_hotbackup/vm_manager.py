"""
Libvirt hypervisor adapter with disk-only snapshot and block-commit support
"""
import libvirt
import shlex
import subprocess
import time
import xml.etree.ElementTree as ET
from typing import List, Optional

from kvm_hotbackup.exceptions import (
    CommitError, ConfigExportError, HypervisorError, SnapshotError, VMNotFoundError,
)
from kvm_hotbackup.hypervisor import HypervisorAdapter
from kvm_hotbackup.logging_config import get_logger, LogOperation
from kvm_hotbackup.models import DiskInfo, SnapshotHandle, VMInfo, VMState


class LibvirtManager(HypervisorAdapter):
    """KVM/libvirt adapter"""
    
    config_extension = "xml"
    
    def __init__(self, uri: str = "qemu:///system", skip_token: str = "skip-kvm-backup",
                 commit_timeout: int = 0, poll_interval: float = 1.0):
        self.uri = uri
        self.skip_token = skip_token
        self.commit_timeout = commit_timeout
        self.poll_interval = poll_interval
        self.conn: Optional[libvirt.virConnect] = None
        self.logger = get_logger("kvm_hotbackup.vm_manager")
    
    @property
    def name(self) -> str:
        return "libvirt"
    
    def connect(self) -> None:
        """Connect to libvirt daemon"""
        try:
            if self.conn is None or not self.conn.isAlive():
                self.conn = libvirt.open(self.uri)
                self.logger.info("Connected to libvirt", uri=self.uri)
        except libvirt.libvirtError as e:
            self.logger.error("Failed to connect to libvirt", uri=self.uri, error=str(e))
            self.conn = None
            raise HypervisorError(f"Cannot connect to {self.uri}: {e}") from e
    
    def disconnect(self) -> None:
        """Disconnect from libvirt daemon"""
        if self.conn and self.conn.isAlive():
            self.conn.close()
            self.logger.info("Disconnected from libvirt")
        self.conn = None
    
    def _domain(self, vm: VMInfo):
        self.connect()
        try:
            return self.conn.lookupByUUIDString(vm.uuid)
        except libvirt.libvirtError as e:
            if e.get_error_code() == libvirt.VIR_ERR_NO_DOMAIN:
                raise VMNotFoundError(f"VM '{vm.name}' ({vm.uuid}) no longer exists") from e
            raise HypervisorError(f"Lookup of VM '{vm.name}' failed: {e}") from e
    
    def _volume_path(self, pool: str, volume: str) -> Optional[str]:
        try:
            return self.conn.storagePoolLookupByName(pool).storageVolLookupByName(volume).path()
        except libvirt.libvirtError as e:
            self.logger.warning("Cannot resolve storage volume", pool=pool, volume=volume,
                                error=str(e))
            return None
    
    def _parse_disks(self, root: ET.Element) -> List[DiskInfo]:
        """Extract every disk device from a domain XML definition.
        
        File, block and pool-volume disks resolve to a local path. Network
        disks, and volumes that cannot be resolved, are kept with
        ``copyable=False`` so the backup reports them instead of dropping them.
        """
        disks = []
        for disk in root.findall("./devices/disk"):
            if disk.get("device", "disk") != "disk":
                continue
            target = disk.find("target")
            if target is None:
                continue
            driver = disk.find("driver")
            fmt = driver.get("type") if driver is not None else None
            source = disk.find("source")
            if source is None:
                # Empty drive
                continue
            
            disk_type = disk.get("type", "file")
            path = source.get("file") or source.get("dev")
            copyable = True
            if disk_type == "volume":
                pool, volume = source.get("pool", ""), source.get("volume", "")
                path = self._volume_path(pool, volume)
                if not path:
                    path, copyable = f"{pool}/{volume}", False
            elif disk_type == "network":
                path = f"{source.get('protocol', 'network')}:{source.get('name', '')}"
                copyable = False
            if not path:
                continue
            disks.append(DiskInfo(target=target.get("dev"), source=path, format=fmt,
                                  copyable=copyable))
        return disks
    
    def _info_from_domain(self, domain) -> VMInfo:
        root = ET.fromstring(domain.XMLDesc(0))
        return VMInfo(
            uuid=domain.UUIDString(),
            name=domain.name(),
            state=VMState.RUNNING if domain.isActive() else VMState.STOPPED,
            disks=self._parse_disks(root),
            title=root.findtext("title") or "",
            description=root.findtext("description") or "",
        )
    
    def list_all_vms(self) -> List[VMInfo]:
        """List all VMs (running and stopped)"""
        self.connect()
        try:
            domains = self.conn.listAllDomains()
        except libvirt.libvirtError as e:
            self.logger.error("Failed to list VMs", error=str(e))
            raise HypervisorError(f"Cannot list domains: {e}") from e
        
        vms = []
        for domain in domains:
            try:
                vms.append(self._info_from_domain(domain))
            except libvirt.libvirtError as e:
                # Undefined while we were listing
                self.logger.warning("Skipping domain that vanished during listing", error=str(e))
        
        self.logger.info(f"Found {len(vms)} VMs", vm_count=len(vms))
        return vms
    
    def describe(self, vm: VMInfo) -> VMInfo:
        domain = self._domain(vm)
        try:
            return self._info_from_domain(domain)
        except libvirt.libvirtError as e:
            raise VMNotFoundError(f"VM '{vm.name}' could not be described: {e}") from e
    
    def export_config(self, vm: VMInfo, portable: bool = False) -> str:
        """Export the domain XML; the migratable form drops host-specific details"""
        domain = self._domain(vm)
        flags = libvirt.VIR_DOMAIN_XML_MIGRATABLE if portable else 0
        try:
            return domain.XMLDesc(flags)
        except libvirt.libvirtError as e:
            form = "migratable" if portable else "local"
            raise ConfigExportError(f"dumpxml ({form}) failed for VM '{vm.name}': {e}") from e
    
    @staticmethod
    def overlay_path(disk: DiskInfo, snapshot_name: str) -> str:
        return f"{disk.source}.{snapshot_name}"
    
    def _snapshot_xml(self, vm: VMInfo, disks: List[DiskInfo], snapshot_name: str) -> str:
        root = ET.Element("domainsnapshot")
        ET.SubElement(root, "name").text = snapshot_name
        disks_elem = ET.SubElement(root, "disks")
        wanted = {d.target for d in disks}
        for disk in disks:
            elem = ET.SubElement(disks_elem, "disk", name=disk.target, snapshot="external")
            ET.SubElement(elem, "source", file=self.overlay_path(disk, snapshot_name))
        for disk in vm.disks:
            if disk.target not in wanted:
                ET.SubElement(disks_elem, "disk", name=disk.target, snapshot="no")
        return ET.tostring(root, encoding="unicode")
    
    def create_disk_snapshot(self, vm: VMInfo, disks: List[DiskInfo],
                             snapshot_name: str) -> SnapshotHandle:
        """Create an external, disk-only, atomic snapshot without libvirt metadata"""
        domain = self._domain(vm)
        snapshot_xml = self._snapshot_xml(vm, disks, snapshot_name)
        flags = (libvirt.VIR_DOMAIN_SNAPSHOT_CREATE_DISK_ONLY |
                 libvirt.VIR_DOMAIN_SNAPSHOT_CREATE_ATOMIC |
                 libvirt.VIR_DOMAIN_SNAPSHOT_CREATE_NO_METADATA)
        
        try:
            with LogOperation(self.logger, "create_snapshot", vm_name=vm.name,
                              snapshot_name=snapshot_name):
                domain.snapshotCreateXML(snapshot_xml, flags)
        except libvirt.libvirtError as e:
            raise SnapshotError(f"Failed to create snapshot for VM '{vm.name}': {e}") from e
        
        return SnapshotHandle(
            name=snapshot_name,
            vm_uuid=vm.uuid,
            vm_name=vm.name,
            base_paths={d.target: d.source for d in disks},
            overlay_paths={d.target: self.overlay_path(d, snapshot_name) for d in disks},
        )
    
    def _wait_for_commit(self, domain, vm: VMInfo, target: str) -> None:
        """Poll the active block-commit job until it is ready to pivot"""
        start_time = time.monotonic()
        while True:
            info = domain.blockJobInfo(target, 0)
            if not info:
                raise CommitError(f"Block commit job for '{target}' of VM '{vm.name}' disappeared")
            if info.get('end', 0) > 0 and info.get('cur') == info.get('end'):
                return
            if self.commit_timeout and time.monotonic() - start_time > self.commit_timeout:
                raise CommitError(f"Timed out waiting for block commit of '{target}' "
                                  f"for VM '{vm.name}'")
            time.sleep(self.poll_interval)
    
    def commit_snapshot(self, vm: VMInfo, snapshot: SnapshotHandle, target: str) -> None:
        """Merge the overlay of one disk back into its base and pivot the VM onto it"""
        base_path = snapshot.base_paths[target]
        try:
            domain = self._domain(vm)
            with LogOperation(self.logger, "block_commit", vm_name=vm.name, target=target):
                domain.blockCommit(target, None, None, 0,
                                   libvirt.VIR_DOMAIN_BLOCK_COMMIT_ACTIVE)
                self._wait_for_commit(domain, vm, target)
                domain.blockJobAbort(target, libvirt.VIR_DOMAIN_BLOCK_JOB_ABORT_PIVOT)
            current = {d.target: d.source for d in self._info_from_domain(domain).disks}
        except (libvirt.libvirtError, VMNotFoundError, HypervisorError) as e:
            raise CommitError(f"Unable to merge changes for target '{target}' "
                              f"of VM '{vm.name}': {e}") from e
        
        if current.get(target) != base_path:
            raise CommitError(f"Target '{target}' of VM '{vm.name}' still points at "
                              f"{current.get(target)} instead of {base_path}")
        snapshot.merged.append(target)
    
    def clone_vm(self, vm: VMInfo, clone_name: str, destination: str) -> None:
        """Clone a stopped VM with virt-clone, placing its disks in destination"""
        cmd = ['virt-clone', '--connect', self.uri, '--original', vm.name, '--name', clone_name]
        for disk in vm.disks:
            cmd.extend(['--file', f"{destination}/{clone_name}-{disk.filename}"])
        
        with LogOperation(self.logger, "clone_vm", vm_name=vm.name, clone_name=clone_name):
            result = subprocess.run(cmd, capture_output=True, text=True)
        if result.returncode != 0:
            raise HypervisorError(f"virt-clone of '{vm.name}' failed: {result.stderr.strip()}")
    
    def define_command(self, vm: VMInfo, config_file: str) -> str:
        return f"virsh define {shlex.quote(config_file)}"
    
    def manual_commit_command(self, vm: VMInfo, disk: DiskInfo) -> str:
        return (f"virsh blockcommit {shlex.quote(vm.name)} {shlex.quote(disk.target)} "
                f"--active --pivot --wait")
