"""
Logging configuration for KVM hot-backup
"""
import logging
import logging.handlers
import json
import sys
from pathlib import Path
from datetime import datetime


_RESERVED_ATTRS = {
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname',
    'filename', 'module', 'exc_info', 'exc_text', 'stack_info',
    'lineno', 'funcName', 'created', 'msecs', 'relativeCreated',
    'thread', 'threadName', 'processName', 'process', 'message',
    'taskName',
}


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging"""
    
    def format(self, record):
        log_entry = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }
        
        # Add exception info if present
        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)
        
        # Add any extra fields
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_entry[key] = value
        
        return json.dumps(log_entry, default=str)


def setup_logging(log_level: str = "INFO", 
                 log_format: str = "text",
                 log_dir: str = "./logs",
                 log_file_max_size: int = 10485760,
                 backup_count: int = 5,
                 console: bool = True):
    """Setup logging configuration"""
    
    # Create log directory
    Path(log_dir).mkdir(parents=True, exist_ok=True)
    
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper()))
    root_logger.handlers.clear()
    
    if log_format == "json":
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    
    # Console handler on stderr
    if console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(logging.WARNING)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)
    
    # File handler with rotation
    log_file = Path(log_dir) / "kvm-hotbackup.log"
    file_handler = logging.handlers.RotatingFileHandler(
        log_file,
        maxBytes=log_file_max_size,
        backupCount=backup_count,
        encoding='utf-8'
    )
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)
    
    logging.getLogger('asyncio').setLevel(logging.WARNING)


class EnhancedLogger:
    """Logger wrapper that turns keyword arguments into structured extra fields"""
    
    def __init__(self, logger: logging.Logger):
        self._logger = logger
    
    @property
    def name(self) -> str:
        return self._logger.name
    
    def _log_with_kwargs(self, level, msg, *args, **kwargs):
        extra = kwargs.pop('extra', {})
        exc_info = kwargs.pop('exc_info', None)
        # Move all remaining kwargs to extra
        for key, value in kwargs.items():
            extra[key] = value
        
        self._logger.log(level, msg, *args, extra=extra or None, exc_info=exc_info)
    
    def log(self, level, msg, *args, **kwargs):
        self._log_with_kwargs(level, msg, *args, **kwargs)
    
    def info(self, msg, *args, **kwargs):
        self._log_with_kwargs(logging.INFO, msg, *args, **kwargs)
    
    def error(self, msg, *args, **kwargs):
        self._log_with_kwargs(logging.ERROR, msg, *args, **kwargs)
    
    def critical(self, msg, *args, **kwargs):
        self._log_with_kwargs(logging.CRITICAL, msg, *args, **kwargs)
    
    def warning(self, msg, *args, **kwargs):
        self._log_with_kwargs(logging.WARNING, msg, *args, **kwargs)
    
    def debug(self, msg, *args, **kwargs):
        self._log_with_kwargs(logging.DEBUG, msg, *args, **kwargs)


def get_logger(name: str) -> EnhancedLogger:
    """Get a logger instance that accepts structured keyword fields"""
    return EnhancedLogger(logging.getLogger(name))


# Context manager for operation logging
class LogOperation:
    """Context manager for logging operations with timing"""
    
    def __init__(self, logger, operation: str, **context):
        self.logger = logger
        self.operation = operation
        self.context = context
        self.start_time = None
    
    def __enter__(self):
        self.start_time = datetime.now()
        self.logger.debug(f"Starting {self.operation}", extra={
            'operation': self.operation,
            'phase': 'start',
            **self.context
        })
        return self
    
    def __exit__(self, exc_type, exc_val, exc_tb):
        duration = datetime.now() - self.start_time
        
        if exc_type is None:
            self.logger.info(f"Completed {self.operation}", extra={
                'operation': self.operation,
                'phase': 'complete',
                'duration_seconds': duration.total_seconds(),
                **self.context
            })
        else:
            self.logger.error(f"Failed {self.operation}", extra={
                'operation': self.operation,
                'phase': 'failed',
                'duration_seconds': duration.total_seconds(),
                'error': str(exc_val),
                **self.context
            })
