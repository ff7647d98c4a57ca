"""
Configuration models and data structures.

This module defines the configuration models used throughout the application,
providing type safety and validation for configuration values.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional

from ...core.domain.upload import DEFAULT_CHUNK_SIZE
from ..clients.http import DEFAULT_CHUNK_PATH, DEFAULT_FINALIZE_PATH, DEFAULT_INIT_PATH
from ..services.upload.transport import (
    INITIAL_RETRY_DELAY_MS, MAX_RETRIES, MAX_RETRY_DELAY_MS
)


@dataclass
class UploadConfig:
    """Chunked transfer configuration."""
    chunk_size: int = DEFAULT_CHUNK_SIZE
    max_retries: int = MAX_RETRIES
    initial_retry_delay_ms: int = INITIAL_RETRY_DELAY_MS
    max_retry_delay_ms: int = MAX_RETRY_DELAY_MS
    strict_resume: bool = False


@dataclass
class BackendConfig:
    """Upload backend endpoints."""
    base_url: str = "http://localhost:3000"
    init_path: str = DEFAULT_INIT_PATH
    chunk_path: str = DEFAULT_CHUNK_PATH
    finalize_path: str = DEFAULT_FINALIZE_PATH
    # Total seconds per request; None leaves slow chunk sends to the retry envelope.
    timeout: Optional[float] = None
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class StorageConfig:
    """Durable record storage."""
    record_directory: str = ".chunkwise"
    persistent: bool = True


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    log_directory: str = "logs"
    max_file_size: str = "10 MB"
    backup_count: int = 5
    console_enabled: bool = True
    file_enabled: bool = False


@dataclass
class ApplicationConfig:
    """Main application configuration."""

    name: str = "chunkwise"
    version: str = "0.1.0"
    debug: bool = False

    upload: UploadConfig = field(default_factory=UploadConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    config_file_path: Optional[str] = None

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        self._validate_upload()
        self._validate_backend()
        self._validate_logging()

    def _validate_upload(self) -> None:
        if self.upload.chunk_size <= 0:
            raise ValueError(f"Chunk size must be positive, got {self.upload.chunk_size}")
        if self.upload.max_retries < 0:
            raise ValueError(f"Max retries cannot be negative, got {self.upload.max_retries}")
        if self.upload.initial_retry_delay_ms < 0:
            raise ValueError(
                f"Initial retry delay cannot be negative, got {self.upload.initial_retry_delay_ms}")
        if self.upload.max_retry_delay_ms < self.upload.initial_retry_delay_ms:
            raise ValueError(
                f"Max retry delay ({self.upload.max_retry_delay_ms}) must be at least "
                f"the initial retry delay ({self.upload.initial_retry_delay_ms})")

    def _validate_backend(self) -> None:
        if not self.backend.base_url.startswith(("http://", "https://")):
            raise ValueError(f"Backend URL must be http(s), got {self.backend.base_url!r}")
        if self.backend.timeout is not None and self.backend.timeout <= 0:
            raise ValueError(f"Backend timeout must be positive, got {self.backend.timeout}")

    def _validate_logging(self) -> None:
        valid_levels = {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}
        if self.logging.level.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {self.logging.level}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ApplicationConfig':
        """Create configuration from dictionary."""
        return cls(
            name=data.get('name', 'chunkwise'),
            version=data.get('version', '0.1.0'),
            debug=data.get('debug', False),
            upload=UploadConfig(**data.get('upload', {})),
            backend=BackendConfig(**data.get('backend', {})),
            storage=StorageConfig(**data.get('storage', {})),
            logging=LoggingConfig(**data.get('logging', {})),
            config_file_path=data.get('config_file_path')
        )
