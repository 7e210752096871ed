"""
Configuration Management Module
Handles loading and validation of environment variables and settings
"""

import os
import re
from typing import List, Optional
from dataclasses import dataclass, field
from dotenv import load_dotenv

from .security_validators import MAX_MIME_PARTS

# module.path:callable
STEP_PATH_PATTERN = re.compile(r"^[A-Za-z_][\w.]*:[A-Za-z_]\w*$")


class ConfigurationError(ValueError):
    """Raised when the loaded configuration cannot be used"""


@dataclass
class DatabaseConfig:
    """MongoDB connection and collection names"""
    connection: str
    database: str
    messages: str
    users: str


@dataclass
class StorageConfig:
    """Attachment storage and parse limits"""
    attachments_path: str
    temp_path: Optional[str]
    spool_workers: int
    parse_timeout: float
    max_mime_parts: int = MAX_MIME_PARTS


@dataclass
class SystemConfig:
    """Configuration for system settings"""
    debug: bool
    server_name: str
    log_level: str
    log_file: str
    log_format: str = "text"
    post_parse_steps: List[str] = field(default_factory=list)


class Config:
    """Main configuration class"""

    def __init__(self, env_file: str = ".env"):
        """
        Initialize configuration from environment file

        Args:
            env_file: Path to environment file (default: .env)
        """
        load_dotenv(env_file)

        self.database = self._load_database_config()
        self.storage = self._load_storage_config()
        self.system = self._load_system_config()

    def _load_database_config(self) -> DatabaseConfig:
        """Load document store configuration"""
        return DatabaseConfig(
            connection=os.getenv("MONGO_URI", "mongodb://localhost:27017"),
            database=os.getenv("MONGO_DATABASE", "mailstore"),
            messages=os.getenv("MESSAGES_COLLECTION", "messages"),
            users=os.getenv("USERS_COLLECTION", "users"),
        )

    def _load_storage_config(self) -> StorageConfig:
        """Load attachment storage configuration"""
        return StorageConfig(
            attachments_path=os.getenv("ATTACHMENTS_PATH", "attachments"),
            temp_path=os.getenv("ATTACHMENTS_TEMP_PATH") or None,
            spool_workers=int(os.getenv("SPOOL_WORKERS", "4")),
            parse_timeout=float(os.getenv("PARSE_TIMEOUT", "60")),
            max_mime_parts=int(os.getenv("MAX_MIME_PARTS", str(MAX_MIME_PARTS))),
        )

    def _load_system_config(self) -> SystemConfig:
        """Load system configuration"""
        return SystemConfig(
            debug=self._get_bool("DEBUG", False),
            server_name=os.getenv("SERVER_NAME", "localhost"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_file=os.getenv("LOG_FILE", "logs/mailstore.log"),
            log_format=os.getenv("LOG_FORMAT", "text").strip().lower(),
            post_parse_steps=self._parse_list(os.getenv("POST_PARSE_STEPS", "")),
        )

    @staticmethod
    def _parse_list(value: str) -> List[str]:
        """Normalize a comma/newline separated string into a clean list."""
        if not value:
            return []
        return [
            item.strip()
            for item in value.replace("\n", ",").split(",")
            if item.strip()
        ]

    @staticmethod
    def _get_bool(key: str, default: bool = False) -> bool:
        """Convert environment variable to boolean"""
        value = os.getenv(key, str(default)).lower()
        return value in ('true', '1', 'yes', 'on')

    def validate(self) -> bool:
        """
        Validate configuration

        Returns:
            True if configuration is valid

        Raises:
            ConfigurationError: If configuration is invalid
        """
        if not self.system.server_name:
            raise ConfigurationError("SERVER_NAME must be set for username to email conversion")

        if not self.storage.attachments_path:
            raise ConfigurationError("ATTACHMENTS_PATH must not be empty")

        if self.storage.spool_workers <= 0:
            raise ConfigurationError("SPOOL_WORKERS must be a positive integer")

        if self.storage.max_mime_parts <= 0:
            raise ConfigurationError("MAX_MIME_PARTS must be a positive integer")

        if self.storage.parse_timeout < 0:
            raise ConfigurationError("PARSE_TIMEOUT must be zero (disabled) or positive")

        if self.system.log_format not in ("text", "json"):
            raise ConfigurationError(f"Unknown LOG_FORMAT '{self.system.log_format}'")

        for step in self.system.post_parse_steps:
            if not STEP_PATH_PATTERN.match(step):
                raise ConfigurationError(
                    f"Invalid post-parse step '{step}', expected 'package.module:function'"
                )

        return True
