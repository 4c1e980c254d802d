"""Configuration: validated settings plus ``.env`` cascade discovery.

Quick start::

    from dpmigrate.core.config import get_settings

    settings = get_settings()
    print(settings.max_concurrent)   # 4
"""

from .loader import discover_env_files, find_project_root
from .settings import MigrateSettings, clear_settings_cache, get_settings

__all__ = [
    "MigrateSettings",
    "clear_settings_cache",
    "discover_env_files",
    "find_project_root",
    "get_settings",
]
