"""
Disk image transfer: byte-faithful copies and qcow2 compaction
"""
import os
import subprocess
from pathlib import Path
from typing import Optional

from kvm_hotbackup.exceptions import CompactionError, CopyError
from kvm_hotbackup.logging_config import get_logger, LogOperation


COMPACTABLE_FORMATS = {'qcow2'}
SHRUNK_SUFFIX = '.shrunk'


class DiskTransfer:
    """Copies disk images into a backup set and compacts copy-on-write copies"""
    
    def __init__(self, qemu_img: str = "qemu-img", cp: str = "cp"):
        self.qemu_img = qemu_img
        self.cp = cp
        self.logger = get_logger("kvm_hotbackup.disk_transfer")
    
    def _discard(self, path: str) -> None:
        try:
            Path(path).unlink(missing_ok=True)
        except OSError as e:
            self.logger.warning("Unable to remove partial copy", path=path, error=str(e))
    
    def copy(self, source_path: str, dest_path: str) -> int:
        """Copy a disk image keeping holes sparse, returning the apparent size written"""
        cmd = [self.cp, '--sparse=always', source_path, dest_path]
        try:
            with LogOperation(self.logger, "copy_disk", source=source_path, destination=dest_path):
                result = subprocess.run(cmd, capture_output=True, text=True)
                if result.returncode != 0:
                    raise CopyError(f"Unable to copy {source_path} to {dest_path}: "
                                    f"{result.stderr.strip()}")
                return Path(dest_path).stat().st_size
        except CopyError:
            # No partial copy is left behind
            self._discard(dest_path)
            raise
        except OSError as e:
            self._discard(dest_path)
            raise CopyError(f"Unable to copy {source_path} to {dest_path}: {e}") from e
    
    @staticmethod
    def is_compactable(path: str, disk_format: Optional[str] = None) -> bool:
        """Recognise compactable images by declared format, else by file extension"""
        if disk_format:
            return disk_format.lower() in COMPACTABLE_FORMATS
        return Path(path).suffix.lstrip('.').lower() in COMPACTABLE_FORMATS
    
    def compact(self, path: str, disk_format: Optional[str] = None) -> None:
        """Rewrite a qcow2 image to drop unused blocks.
        
        Conversion goes to a temporary file that replaces the original only on
        success; the original copy is left untouched otherwise.
        """
        if not self.is_compactable(path, disk_format):
            raise CompactionError(f"{path} is not a compactable image")
        
        shrunk = f"{path}{SHRUNK_SUFFIX}"
        cmd = [self.qemu_img, 'convert', '-f', 'qcow2', '-O', 'qcow2', path, shrunk]
        try:
            with LogOperation(self.logger, "compact_disk", path=path):
                result = subprocess.run(cmd, capture_output=True, text=True)
                if result.returncode != 0:
                    raise CompactionError(f"qemu-img failed for {path}: {result.stderr.strip()}")
                os.replace(shrunk, path)
        except OSError as e:
            raise CompactionError(f"Unable to compact {path}: {e}") from e
        finally:
            Path(shrunk).unlink(missing_ok=True)
