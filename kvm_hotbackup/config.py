"""
Configuration settings for KVM hot-backup
"""
from typing import Optional
from pathlib import Path
import os
import socket
from dataclasses import dataclass

# Load .env file if it exists
def load_env_file():
    env_file = Path(__file__).parent / '.env'
    if env_file.exists():
        with open(env_file, 'r') as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith('#') and '=' in line:
                    key, value = line.split('=', 1)
                    os.environ[key.strip()] = value.strip()

load_env_file()


DEFAULT_SKIP_TOKENS = {
    "libvirt": "skip-kvm-backup",
    "virtualbox": "vbox-backup::off",
}


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ('true', '1', 'yes')


@dataclass
class BackupSettings:
    """Main configuration for the hot-backup orchestrator"""
    
    # Destination
    backup_root: str = os.getenv("BACKUP_ROOT", f"/mnt/kvm-backups/{socket.gethostname()}")
    keep_backups_max_days: int = int(os.getenv("KEEP_BACKUPS_MAX_DAYS", "7"))
    email_log_to: str = os.getenv("EMAIL_LOG_TO", "")
    output_to_stdout: bool = _env_bool("OUTPUT_TO_STDOUT", "1")
    shrink_disk_images: bool = _env_bool("SHRINK_DISK_IMAGES", "1")
    
    # Hypervisor
    hypervisor: str = "libvirt"
    libvirt_uri: str = "qemu:///system"
    skip_token: str = ""
    backup_marker: str = ".kvm-backup"
    commit_timeout: int = 0
    commit_poll_interval: float = 1.0
    
    # Fleet behaviour
    parallel_vms: int = 1
    count_degraded_as_success: bool = False
    
    # External tools
    qemu_img_path: str = "qemu-img"
    cp_path: str = "cp"
    vboxmanage_path: str = "VBoxManage"
    mail_command: str = "mail"
    
    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"
    log_dir: str = os.getenv("LOG_DIR", "./logs")
    log_file_max_size: int = 10485760  # 10MB
    
    def __post_init__(self):
        """Load configuration from environment variables"""
        # Override with environment variables if they exist
        for field_name in self.__dataclass_fields__:
            env_name = f"KVM_BACKUP_{field_name.upper()}"
            env_value = os.getenv(env_name)
            if env_value is not None:
                field_type = self.__dataclass_fields__[field_name].type
                if field_type in (int, 'int'):
                    setattr(self, field_name, int(env_value))
                elif field_type in (float, 'float'):
                    setattr(self, field_name, float(env_value))
                elif field_type in (bool, 'bool'):
                    setattr(self, field_name, env_value.lower() in ('true', '1', 'yes'))
                else:
                    setattr(self, field_name, env_value)
    
    @property
    def effective_skip_token(self) -> str:
        """Skip token in use, falling back to the hypervisor's convention"""
        return self.skip_token or DEFAULT_SKIP_TOKENS.get(self.hypervisor, "skip-kvm-backup")
    
    @property
    def hostname(self) -> Optional[str]:
        return socket.gethostname()


@dataclass
class LoggingSettings:
    """Logging configuration"""
    
    log_file_backup_count: int = 5
    
    def __post_init__(self):
        """Load from environment variables"""
        for field_name in self.__dataclass_fields__:
            env_name = f"LOG_{field_name.upper()}"
            env_value = os.getenv(env_name)
            if env_value is not None:
                field_type = self.__dataclass_fields__[field_name].type
                if field_type in (int, 'int'):
                    setattr(self, field_name, int(env_value))
                else:
                    setattr(self, field_name, env_value)


# Global settings instance
settings = BackupSettings()
log_settings = LoggingSettings()
