"""Server configuration and the `.liveserverrc.json` settings file."""

import json
import logging
import pathlib
from dataclasses import dataclass, field, fields
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_PORT = 5500
DEFAULT_HOST = "127.0.0.1"
DEFAULT_IGNORE_PATTERNS = ("**/node_modules/**", "**/.git/**")
RC_FILENAME = ".liveserverrc.json"

# Dev-tool profiles the HMR adapter knows how to launch and proxy.
HMR_PROFILES = ("vite", "snowpack", "webpack")

PROJECT_TYPES = ("react", "vue", "svelte") + HMR_PROFILES + ("static",)

# Settings-file key -> ServerConfig field
_RC_KEYS = {
    "port": "port",
    "host": "host",
    "https": "use_https",
    "spa": "spa_mode",
    "openBrowser": "open_browser",
    "showOverlay": "show_overlay",
    "watchPatterns": "watch_patterns",
    "ignorePatterns": "watch_ignore_patterns",
    "proxy": "proxy_rules",
    "projectType": "project_type",
    "maxDocuments": "max_documents",
}


@dataclass(frozen=True)
class ServerConfig:
    """Immutable configuration for one server instance."""

    root_path: pathlib.Path
    port: int = DEFAULT_PORT
    use_https: bool = False
    spa_mode: bool = False
    show_overlay: bool = True
    open_browser: bool = True
    proxy_rules: Mapping[str, str] = field(default_factory=dict)
    watch_patterns: Tuple[str, ...] = ()
    watch_ignore_patterns: Tuple[str, ...] = DEFAULT_IGNORE_PATTERNS
    project_type: Optional[str] = None
    host: str = DEFAULT_HOST
    ws_port: Optional[int] = None
    max_documents: Optional[int] = None

    def __post_init__(self):
        # Frozen: normalize through object.__setattr__
        object.__setattr__(self, "root_path", pathlib.Path(self.root_path).resolve())
        object.__setattr__(
            self, "proxy_rules", MappingProxyType(dict(self.proxy_rules))
        )
        object.__setattr__(self, "watch_patterns", tuple(self.watch_patterns))
        object.__setattr__(
            self, "watch_ignore_patterns", tuple(self.watch_ignore_patterns)
        )

    @property
    def socket_port(self) -> int:
        """Port of the socket-channel listener."""
        if self.ws_port is not None:
            return self.ws_port
        # Ephemeral HTTP port gets an ephemeral socket port too
        return self.port + 1 if self.port else 0

    @property
    def hmr_enabled(self) -> bool:
        return self.project_type in HMR_PROFILES


def detect_project_type(root: pathlib.Path) -> str:
    """Guess the project's framework from package.json or bundler config files."""
    root = pathlib.Path(root)
    pkg_path = root / "package.json"
    if pkg_path.is_file():
        try:
            pkg = json.loads(pkg_path.read_text(encoding="utf-8"))
            deps = {**pkg.get("dependencies", {}), **pkg.get("devDependencies", {})}
        except (json.JSONDecodeError, OSError, AttributeError) as e:
            logger.debug(f"Could not read {pkg_path}: {e}")
            deps = {}

        if "react-scripts" in deps or "react-dom" in deps:
            return "react"
        if "@vue/cli-service" in deps or "vue" in deps:
            return "vue"
        if "svelte" in deps or "@sveltejs/kit" in deps:
            return "svelte"
        if "vite" in deps:
            return "vite"
        if "snowpack" in deps:
            return "snowpack"
        if "webpack" in deps or "webpack-dev-server" in deps:
            return "webpack"

    for filename, project_type in (
        ("vite.config.js", "vite"),
        ("snowpack.config.js", "snowpack"),
        ("webpack.config.js", "webpack"),
        ("svelte.config.js", "svelte"),
        ("vue.config.js", "vue"),
    ):
        if (root / filename).exists():
            return project_type

    return "static"


def read_rc_file(root: pathlib.Path) -> Dict[str, Any]:
    """Read `.liveserverrc.json` from the project root, translated to field names.

    Unknown keys are ignored. A file that cannot be parsed is logged and
    treated as empty.
    """
    rc_path = pathlib.Path(root) / RC_FILENAME
    if not rc_path.is_file():
        return {}

    try:
        raw = json.loads(rc_path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"Failed to parse {rc_path}: {e}")
        return {}

    if not isinstance(raw, dict):
        logger.warning(f"Ignoring {rc_path}: expected a JSON object")
        return {}

    values = {}
    for key, value in raw.items():
        field_name = _RC_KEYS.get(key)
        if field_name is None:
            logger.debug(f"Ignoring unknown setting {key!r} in {rc_path}")
            continue
        values[field_name] = value
    return values


def load_config(
    root: pathlib.Path, overrides: Optional[Dict[str, Any]] = None
) -> ServerConfig:
    """Build a ServerConfig from defaults, the settings file, and explicit overrides.

    Overrides whose value is None are skipped so callers can pass unset CLI
    options straight through.
    """
    root = pathlib.Path(root).resolve()
    values = read_rc_file(root)
    if overrides:
        values.update({k: v for k, v in overrides.items() if v is not None})

    known = {f.name for f in fields(ServerConfig)}
    values = {k: v for k, v in values.items() if k in known and k != "root_path"}

    port = values.get("port", DEFAULT_PORT)
    if not isinstance(port, int) or not 0 <= port <= 65535:
        logger.warning(f"Invalid port {port!r}, using {DEFAULT_PORT}")
        values["port"] = DEFAULT_PORT

    if not values.get("project_type"):
        values["project_type"] = detect_project_type(root)
        logger.debug(f"Detected project type: {values['project_type']}")

    return ServerConfig(root_path=root, **values)


def save_config(root: pathlib.Path, config: ServerConfig) -> pathlib.Path:
    """Write the settings of `config` to the project's `.liveserverrc.json`."""
    rc_path = pathlib.Path(root) / RC_FILENAME
    data = {}
    for rc_key, field_name in _RC_KEYS.items():
        value = getattr(config, field_name)
        if isinstance(value, tuple):
            value = list(value)
        elif isinstance(value, Mapping):
            value = dict(value)
        if value is not None:
            data[rc_key] = value
    rc_path.write_text(json.dumps(data, indent=2), encoding="utf-8")
    return rc_path
