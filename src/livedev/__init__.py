"""Local development server with live reload, collaboration and HMR hand-off."""

__version__ = "2025.4.1"

from .config import ServerConfig, load_config
from .errors import StartupError
from .events import LifecycleEvents
from .reload_script import inject_reload_script
from .server import LiveServer, ServerInfo

__all__ = [
    "__version__",
    "LiveServer",
    "ServerInfo",
    "ServerConfig",
    "load_config",
    "LifecycleEvents",
    "StartupError",
    "inject_reload_script",
]
