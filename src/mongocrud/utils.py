import importlib
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional


def load_settings(config_file: Optional[Path], required: bool = True) -> Dict[str, Any]:
    try:
        if config_file:
            with open(config_file, 'r') as config_handle:
                return json.load(config_handle)
    except Exception as e:
        if required:
            logging.error(f"Error loading config file {config_file}: {e}")
        return {}

    return {}


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime"""
    return datetime.now(timezone.utc)


def import_callable(path: str, default_attr: str = "load_models") -> Callable[..., Any]:
    """
    Resolve a loader path to a callable.

    Args:
        path: "package.module:function" or "package.module" (uses default_attr)
        default_attr: Attribute looked up when the path names only a module

    Raises:
        ImportError, AttributeError: when the path cannot be resolved
        TypeError: when the resolved attribute is not callable
    """
    module_name, _, attr = path.partition(':')
    module = importlib.import_module(module_name)
    target = getattr(module, attr or default_attr)
    if not callable(target):
        raise TypeError(f"{path} does not resolve to a callable")
    return target
