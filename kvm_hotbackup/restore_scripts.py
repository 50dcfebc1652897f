"""
Restore script generation for backed-up VMs
"""
import shlex
from pathlib import Path
from typing import List, Tuple

from kvm_hotbackup.hypervisor import HypervisorAdapter
from kvm_hotbackup.logging_config import get_logger
from kvm_hotbackup.models import DiskInfo, VMInfo


LOCAL_CONFIG = "local"
PORTABLE_CONFIG = "migratable"

SCRIPT_TEMPLATE = """#!/bin/bash
set -e
cd "$(dirname "${{BASH_SOURCE[0]}}")"
echo {banner}
{define}
echo "Copying disk image(s)..."
{copies}
echo Done!
"""


def config_filename(form: str, extension: str) -> str:
    return f"{form}.{extension}"


def restore_script_name(form: str) -> str:
    return f"restore-{form}.sh"


class RestoreScriptWriter:
    """Writes restore-local.sh and restore-migratable.sh into a VM's backup directory.
    
    Nothing is executed here. The scripts redefine the VM from the exported
    configuration and copy each disk back to its original directory only
    where no file exists yet, so running them again never overwrites a disk.
    """
    
    def __init__(self, adapter: HypervisorAdapter):
        self.adapter = adapter
        self.logger = get_logger("kvm_hotbackup.restore_scripts")
    
    @staticmethod
    def copy_commands(copies: List[Tuple[str, DiskInfo]]) -> List[str]:
        commands = []
        for name, disk in copies:
            dest = shlex.quote(disk.source)
            keep = shlex.quote(f"Keeping existing {disk.source}")
            commands.append(f"if [ -e {dest} ]; then echo {keep}; "
                            f"else cp {shlex.quote(name)} {dest}; fi")
        return commands
    
    def render(self, vm: VMInfo, form: str, copies: List[Tuple[str, DiskInfo]]) -> str:
        config_file = config_filename(form, self.adapter.config_extension)
        commands = self.copy_commands(copies) or [":"]
        return SCRIPT_TEMPLATE.format(
            banner=shlex.quote(f"Restoring VM '{vm.name}'..."),
            define=self.adapter.define_command(vm, config_file),
            copies="\n".join(commands),
        )
    
    def write(self, vm: VMInfo, vm_dir: Path, copies: List[Tuple[str, DiskInfo]]) -> List[Path]:
        """Write both restore variants and return their paths"""
        paths = []
        for form in (LOCAL_CONFIG, PORTABLE_CONFIG):
            path = Path(vm_dir) / restore_script_name(form)
            path.write_text(self.render(vm, form, copies), encoding='utf-8')
            path.chmod(0o755)
            paths.append(path)
        
        self.logger.info("Restore scripts written", vm_name=vm.name, directory=str(vm_dir))
        return paths
