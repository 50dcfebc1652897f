"""
KVM Hot-Backup - live disk backups of virtual machines

Backs up every VM on a host without extended downtime:
- Disk-only snapshots with block commit and pivot for running VMs
- Direct copies for stopped VMs
- Optional qcow2 compaction
- Restore scripts next to every backup
- Age-based retention of backup sets
"""

__version__ = "1.0.0"

from .models import BackupRun, VMBackupResult, VMOutcome, VMState
from .config import settings

__all__ = [
    'BackupRun',
    'VMBackupResult',
    'VMOutcome',
    'VMState',
    'settings'
]
