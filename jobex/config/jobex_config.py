"""
JobEX Configuration Management

This module provides configuration management for JobEX.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from jobex.errors import ValidationError

# Configure logging
logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent / 'default_config.yaml'
USER_CONFIG_PATH = Path.home() / '.jobex' / 'config.yaml'


class JobEXConfig:
    """
    Manages configuration for JobEX

    Defaults come from default_config.yaml shipped with the package. A user
    file, when present, is deep-merged over them. Instances are independent
    so each test or service can hold its own configuration.
    """

    def __init__(self, overrides: Optional[Dict[str, Any]] = None, load_user_file: bool = False):
        with open(DEFAULT_CONFIG_PATH, 'r') as f:
            self.config: Dict[str, Any] = yaml.safe_load(f)

        if load_user_file and USER_CONFIG_PATH.exists():
            self._merge_file(USER_CONFIG_PATH)

        if overrides:
            self._update_config_recursive(self.config, overrides)

        self._validate_config()

    @classmethod
    def from_file(cls, config_path: str) -> 'JobEXConfig':
        """Load configuration from file

        Args:
            config_path: Path to a YAML file merged over the defaults

        Returns:
            JobEXConfig instance
        """
        instance = cls()
        try:
            instance._merge_file(Path(config_path))
        except Exception as e:
            logger.error(f"Failed to load configuration from {config_path}: {str(e)}")
            raise
        instance._validate_config()
        return instance

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value

        Args:
            key: Configuration key (dot notation)
            default: Default value if key not found

        Returns:
            Configuration value
        """
        try:
            value = self.config
            for k in key.split('.'):
                value = value[k]
            return value
        except (KeyError, TypeError):
            return default

    def set(self, key: str, value: Any) -> None:
        """Set configuration value

        Args:
            key: Configuration key (dot notation)
            value: Configuration value
        """
        keys = key.split('.')
        config = self.config
        for k in keys[:-1]:
            if k not in config:
                config[k] = {}
            config = config[k]
        config[keys[-1]] = value

    def get_all(self) -> Dict[str, Any]:
        """Get all configuration"""
        return self.config.copy()

    def get_rate_limits(self, profile: str = 'submission') -> Dict[str, Dict[str, Any]]:
        """Window configs for a rate-limit profile ('default' or 'submission')"""
        return dict(self.get(f'rate_limits.{profile}', {}) or {})

    def get_stages(self) -> List[Dict[str, Any]]:
        """Ordered pipeline stages as [{'name', 'weight'}]"""
        return list(self.get('pipeline.stages', []) or [])

    def get_sections(self) -> List[str]:
        """Ordered section names for the extraction stage"""
        return list(self.get('pipeline.sections', []) or [])

    def _merge_file(self, path: Path) -> None:
        """Merge a YAML file over the current configuration"""
        if not path.exists():
            raise RuntimeError(f"Configuration file not found: {path}")
        try:
            with open(path, 'r') as f:
                file_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise RuntimeError(f"Invalid YAML in configuration file: {str(e)}")
        if file_config is None:
            raise RuntimeError("Configuration file is empty")
        self._update_config_recursive(self.config, file_config)
        logger.info(f"Configuration loaded from {path}")

    def _validate_config(self) -> None:
        """Validate configuration structure and values"""
        if not isinstance(self.config, dict):
            raise ValidationError("Configuration must be a dictionary")

        for section in ('rate_limits', 'pipeline', 'sizing', 'submission', 'storage'):
            if section not in self.config:
                raise ValidationError(f"Missing required configuration section: {section}")

        stages = self.get_stages()
        if not stages:
            raise ValidationError("Pipeline must define at least one stage")
        names = [stage.get('name') for stage in stages]
        if len(set(names)) != len(names):
            raise ValidationError(f"Duplicate stage names: {names}")
        weights = [stage.get('weight', 0) for stage in stages]
        if any(w < 0 for w in weights):
            raise ValidationError("Stage weights must be non-negative")
        if sum(weights) != 100:
            raise ValidationError(f"Stage weights must sum to 100, got {sum(weights)}")

        sections = self.get_sections()
        if len(set(sections)) != len(sections):
            raise ValidationError(f"Duplicate section names: {sections}")

        start = self.get('sizing.start_ratio')
        end = self.get('sizing.end_ratio')
        if abs((start + end) - 1.0) > 1e-9:
            raise ValidationError("sizing.start_ratio + sizing.end_ratio must equal 1")

        storage_type = self.get('storage.type')
        if storage_type not in ('memory', 'sqlite'):
            raise ValidationError(f"Unsupported storage type: {storage_type}")

    def _update_config_recursive(self, base: Dict[str, Any], update: Dict[str, Any]) -> None:
        """Update configuration recursively"""
        for key, value in update.items():
            if isinstance(value, dict) and key in base and isinstance(base[key], dict):
                self._update_config_recursive(base[key], value)
            else:
                base[key] = value


_default_config: Optional[JobEXConfig] = None


def default_config() -> JobEXConfig:
    """Process-wide configuration including ~/.jobex/config.yaml"""
    global _default_config
    if _default_config is None:
        _default_config = JobEXConfig(load_user_file=True)
    return _default_config
