import importlib.metadata

try:
    _detected_version = importlib.metadata.version("daily-chain")
    # Ensure we never end up with None or empty string
    __version__ = _detected_version if _detected_version else "0.0.0-dev"
except importlib.metadata.PackageNotFoundError:
    # Fallback for dev environments where metadata might not be available
    __version__ = "0.0.0-dev"

from daily_chain.settings import (
    ActionSettings,
    PathSettings,
    RetrySettings,
    ScheduleSettings,
    Settings,
    SubstrateKind,
    clear_settings_cache,
    get_settings,
)

__all__ = [
    "__version__",
    "Settings",
    "PathSettings",
    "ScheduleSettings",
    "RetrySettings",
    "ActionSettings",
    "SubstrateKind",
    "get_settings",
    "clear_settings_cache",
]
