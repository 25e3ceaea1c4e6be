import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from mongocrud.utils import load_settings

ENVIRONMENT_VARIABLE = "MONGOCRUD_ENV"


class SchemaConfig(BaseModel):
    """One schema registration: a named connection plus the loader that binds its models"""
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str = Field(min_length=1)
    uri: str = Field(min_length=1)
    path: Optional[str] = None          # "package.module:function"
    loader: Optional[Callable[..., Any]] = None
    options: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode='after')
    def _require_loader(self) -> 'SchemaConfig':
        if not self.loader and not self.path:
            raise ValueError("schema needs a 'path' or a 'loader'")
        return self


class MongoConfig(BaseModel):
    """Plain configuration structure: {schemas, prefixes, prefixAliases}"""
    model_config = ConfigDict(populate_by_name=True)

    schemas: List[Any] = Field(default_factory=list)    # validated entry by entry at registration
    prefixes: Dict[str, str] = Field(default_factory=dict)
    prefix_aliases: Dict[str, str] = Field(default_factory=dict, alias='prefixAliases')
    environment: str = "default"


class Config:
    """Static configuration class - no instances, only class methods"""
    _config: Dict[str, Any] = {}

    @classmethod
    def initialize(cls, config_file: str) -> Dict[str, Any]:
        """Initialize the config with values from config file"""
        cls._config = cls._load_system_config(config_file)
        configure_logging(cls._config.get('log_level', 'info'))
        return cls._config

    @classmethod
    def get(cls, key: str, default: Any = None) -> Any:
        """Get a configuration value by key"""
        return cls._config.get(key, default)

    @classmethod
    def environment(cls) -> str:
        """Current environment name; the MONGOCRUD_ENV variable wins over the file"""
        return os.environ.get(ENVIRONMENT_VARIABLE) or cls._config.get('environment', 'default')

    @classmethod
    def mongo(cls) -> MongoConfig:
        """Get the mongo section as a MongoConfig"""
        section = dict(cls._config.get('mongo', {}))
        section.setdefault('environment', cls.environment())
        return MongoConfig.model_validate(section)

    @classmethod
    def _load_system_config(cls, config_file: str) -> Dict[str, Any]:
        """
        Load and return the configuration from a json file.
        If the file is not found, return default configuration values.
        """
        if len(config_file) > 0:
            config_path = Path(config_file)
            if config_path.exists():
                return load_settings(config_path)
        logging.warning(f'Configuration file "{config_file}" not found. Using defaults.')
        return {
            'environment': 'default',
            'log_level': 'info',
            'mongo': {
                'schemas': [],
                'prefixes': {},
                'prefixAliases': {},
            },
        }


def configure_logging(level: str = 'info') -> None:
    """Set the root log level from a config string such as 'debug' or 'warning'"""
    numeric = getattr(logging, str(level).upper(), logging.INFO)
    logging.basicConfig(level=numeric, format='%(asctime)s %(levelname)s %(name)s: %(message)s')
    logging.getLogger().setLevel(numeric)
