"""
Configuration Management Module
Loads and validates configuration from config.yaml
"""

import os
import yaml
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Any, Optional, List

logger = logging.getLogger(__name__)

VALID_LOG_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')


@dataclass
class DatabaseConfig:
    """Database configuration"""
    host: str = "localhost"
    port: int = 5432
    user: str = "registry_user"
    password: str = "registry_password"
    name: str = "gn_registry"
    url: Optional[str] = None
    pool_size: int = 5
    max_overflow: int = 10
    echo: bool = False


@dataclass
class PaginationConfig:
    """List view paging"""
    allowed_page_sizes: List[int] = field(default_factory=lambda: [10, 25, 50, 100])
    default_page_size: int = 25


@dataclass
class AuditConfig:
    """Audit trail settings"""
    enabled: bool = True
    retention_days: int = 90
    recent_window_days: int = 30


@dataclass
class StatisticsConfig:
    """Dashboard statistics settings"""
    recent_activity_days: int = 7


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "INFO"
    file: str = "logs/registry.log"
    console: bool = True
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass
class MonitoringSettings:
    """Query monitoring thresholds"""
    slow_query_threshold_ms: float = 1000.0
    warning_threshold_ms: float = 500.0
    enable_prometheus: bool = True


@dataclass
class ApiConfig:
    """HTTP API settings"""
    cors_origins: List[str] = field(default_factory=lambda: ["http://localhost:3000"])
    api_key: Optional[str] = None
    log_directory: str = "logs"


class ConfigurationError(Exception):
    """Raised when configuration is invalid"""
    pass


class ConfigManager:
    """Manages system configuration"""

    _instance: Optional['ConfigManager'] = None

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration manager

        Args:
            config_path: Path to config.yaml file
        """
        self.config_path = Path(config_path) if config_path else self._find_config()
        self._raw_config: Dict[str, Any] = {}
        self.database: DatabaseConfig = DatabaseConfig()
        self.pagination: PaginationConfig = PaginationConfig()
        self.audit: AuditConfig = AuditConfig()
        self.statistics: StatisticsConfig = StatisticsConfig()
        self.logging: LoggingConfig = LoggingConfig()
        self.monitoring: MonitoringSettings = MonitoringSettings()
        self.api: ApiConfig = ApiConfig()

        if self.config_path and self.config_path.exists():
            self.load()
        else:
            logger.warning(f"Config file not found at {self.config_path}, using defaults")
            self.api.api_key = os.getenv('REGISTRY_API_KEY') or None

    def _find_config(self) -> Path:
        """Find config.yaml in common locations"""
        search_paths = [
            Path(__file__).parent / "config.yaml",
            Path.cwd() / "config.yaml",
            Path.cwd() / "python" / "config.yaml",
        ]

        for path in search_paths:
            if path.exists():
                return path

        return search_paths[0]

    def load(self) -> None:
        """Load configuration from YAML file"""
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                self._raw_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")
        except FileNotFoundError:
            raise ConfigurationError(f"Config file not found: {self.config_path}")

        if not isinstance(self._raw_config, dict):
            raise ConfigurationError("Config file must contain a mapping at the top level")

        self._parse_database()
        self._parse_pagination()
        self._parse_audit()
        self._parse_statistics()
        self._parse_logging()
        self._parse_monitoring()
        self._parse_api()
        self._validate()

    def _parse_database(self) -> None:
        """Parse database configuration"""
        cfg = self._raw_config.get('database', {})
        self.database = DatabaseConfig(
            host=cfg.get('host', self.database.host),
            port=cfg.get('port', self.database.port),
            user=cfg.get('user', self.database.user),
            password=cfg.get('password', self.database.password),
            name=cfg.get('name', self.database.name),
            url=cfg.get('url'),
            pool_size=cfg.get('pool_size', 5),
            max_overflow=cfg.get('max_overflow', 10),
            echo=cfg.get('echo', False)
        )

    def _parse_pagination(self) -> None:
        """Parse pagination configuration"""
        cfg = self._raw_config.get('pagination', {})
        self.pagination = PaginationConfig(
            allowed_page_sizes=list(cfg.get('allowed_page_sizes', self.pagination.allowed_page_sizes)),
            default_page_size=cfg.get('default_page_size', 25)
        )

    def _parse_audit(self) -> None:
        """Parse audit configuration"""
        cfg = self._raw_config.get('audit', {})
        self.audit = AuditConfig(
            enabled=cfg.get('enabled', True),
            retention_days=cfg.get('retention_days', 90),
            recent_window_days=cfg.get('recent_window_days', 30)
        )

    def _parse_statistics(self) -> None:
        cfg = self._raw_config.get('statistics', {})
        self.statistics = StatisticsConfig(
            recent_activity_days=cfg.get('recent_activity_days', 7)
        )

    def _parse_logging(self) -> None:
        """Parse logging configuration"""
        cfg = self._raw_config.get('logging', {})
        self.logging = LoggingConfig(
            level=str(cfg.get('level', 'INFO')).upper(),
            file=cfg.get('file', 'logs/registry.log'),
            console=cfg.get('console', True),
            format=cfg.get('format', self.logging.format)
        )

    def _parse_monitoring(self) -> None:
        """Parse monitoring configuration"""
        cfg = self._raw_config.get('monitoring', {})
        self.monitoring = MonitoringSettings(
            slow_query_threshold_ms=float(cfg.get('slow_query_threshold_ms', 1000.0)),
            warning_threshold_ms=float(cfg.get('warning_threshold_ms', 500.0)),
            enable_prometheus=cfg.get('enable_prometheus', True)
        )

    def _parse_api(self) -> None:
        """Parse API configuration"""
        cfg = self._raw_config.get('api', {})
        self.api = ApiConfig(
            cors_origins=list(cfg.get('cors_origins', self.api.cors_origins)),
            api_key=os.getenv('REGISTRY_API_KEY') or cfg.get('api_key'),
            log_directory=cfg.get('log_directory', 'logs')
        )

    @classmethod
    def get_instance(cls, config_path: Optional[str] = None) -> 'ConfigManager':
        """Get singleton instance of ConfigManager"""
        if cls._instance is None:
            cls._instance = ConfigManager(config_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset singleton instance (useful for testing)"""
        cls._instance = None

    def to_dict(self) -> Dict[str, Any]:
        """Export configuration as dictionary (secrets omitted)"""
        return {
            'database': {
                'host': self.database.host,
                'port': self.database.port,
                'user': self.database.user,
                'name': self.database.name
            },
            'pagination': {
                'allowed_page_sizes': self.pagination.allowed_page_sizes,
                'default_page_size': self.pagination.default_page_size
            },
            'audit': {
                'enabled': self.audit.enabled,
                'retention_days': self.audit.retention_days,
                'recent_window_days': self.audit.recent_window_days
            },
            'statistics': {
                'recent_activity_days': self.statistics.recent_activity_days
            },
            'logging': {
                'level': self.logging.level,
                'file': self.logging.file,
                'console': self.logging.console
            },
            'monitoring': {
                'slow_query_threshold_ms': self.monitoring.slow_query_threshold_ms,
                'warning_threshold_ms': self.monitoring.warning_threshold_ms,
                'enable_prometheus': self.monitoring.enable_prometheus
            },
            'api': {
                'cors_origins': self.api.cors_origins
            }
        }

    def _validate(self) -> None:
        """Validate configuration values

        Raises:
            ConfigurationError: If any value is out of range
        """
        errors = []

        sizes = self.pagination.allowed_page_sizes
        if not sizes:
            errors.append("pagination.allowed_page_sizes must not be empty")
        elif any(not isinstance(s, int) or isinstance(s, bool) or s <= 0 for s in sizes):
            errors.append(f"pagination.allowed_page_sizes must be positive integers: {sizes}")
        if self.pagination.default_page_size not in sizes:
            errors.append(
                f"pagination.default_page_size {self.pagination.default_page_size} "
                f"is not one of {sizes}"
            )

        if self.audit.retention_days <= 0:
            errors.append(f"audit.retention_days must be positive: {self.audit.retention_days}")
        if self.audit.recent_window_days <= 0:
            errors.append(f"audit.recent_window_days must be positive: {self.audit.recent_window_days}")
        if self.statistics.recent_activity_days <= 0:
            errors.append(
                f"statistics.recent_activity_days must be positive: {self.statistics.recent_activity_days}"
            )

        if self.logging.level not in VALID_LOG_LEVELS:
            errors.append(f"logging.level must be one of {VALID_LOG_LEVELS}: {self.logging.level}")

        if self.monitoring.warning_threshold_ms > self.monitoring.slow_query_threshold_ms:
            errors.append("monitoring.warning_threshold_ms must not exceed slow_query_threshold_ms")

        if errors:
            raise ConfigurationError("; ".join(errors))


def get_config(config_path: Optional[str] = None) -> ConfigManager:
    """Convenience function to get configuration instance"""
    return ConfigManager.get_instance(config_path)


def setup_logging(config: LoggingConfig) -> None:
    """Configure root logging from the logging section"""
    handlers: List[logging.Handler] = []
    if config.console:
        handlers.append(logging.StreamHandler())
    if config.file:
        log_path = Path(config.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding='utf-8'))

    logging.basicConfig(
        level=getattr(logging, config.level, logging.INFO),
        format=config.format,
        handlers=handlers or None,
        force=True
    )
