"""Configuration management for live-rebuild.

This module builds the configuration from generated defaults, the project's
``live-rebuild.toml``, environment variables, a JSON override passed on the
command line, and CLI flags. Nested dictionaries are deep-merged, then the
result is validated into a :class:`Config` dataclass tree, which serves as the
single source of truth for the orchestrator.

Priority Order:
    1. CLI flags (``--port``, ``--log-level``, ...)
    2. JSON override (positional CLI argument)
    3. Environment Variables
    4. Project file ``live-rebuild.toml`` in the project root
    5. Defaults (:func:`generate_config`)

Supported Environment Variables:
    * ``LIVE_REBUILD_PORT``: HTTP port of the dev server.
    * ``LIVE_REBUILD_PROXY_TARGET``: Upstream URL for proxied prefixes.
    * ``LIVE_REBUILD_LOG_FILE``: Path to the log file.
    * ``LIVE_REBUILD_LOG_LEVEL``: Logging level.
    * ``LIVE_REBUILD_DEBOUNCE_SECONDS``: File event debounce interval.

Configuration Loading Invariants:
    * **Absolute Paths**: Relative paths from any source are resolved against
      the project root.
    * **Workspace Root**: The watch root is the enclosing workspace (a
      ``package.json`` declaring ``workspaces`` that includes the project), or
      the project root itself.
    * **Type Safety**: Numeric values are range checked; unknown log levels are rejected.
"""

from __future__ import annotations

import copy
import json
import logging
import os
from dataclasses import asdict, dataclass, field
from fnmatch import fnmatch
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import tomli

from live_rebuild.bundler import DEFAULT_LOADERS, BundleOptions

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = [
    "Config",
    "HttpConfig",
    "ProxyConfig",
    "StaticConfig",
    "CompilerConfig",
    "PROJECT_CONFIG_FILE",
    "generate_config",
    "merge_options",
    "find_workspace_root",
    "load_config",
    "config_to_dict",
]

PROJECT_CONFIG_FILE = "live-rebuild.toml"
ENTRY_POINT_FILE = Path(__file__).with_name("main.py")

ENV_MAP = {
    "LIVE_REBUILD_PORT": ("http", "port"),
    "LIVE_REBUILD_PROXY_TARGET": ("http", "proxy", "target"),
    "LIVE_REBUILD_LOG_FILE": ("log_file",),
    "LIVE_REBUILD_LOG_LEVEL": ("log_level",),
    "LIVE_REBUILD_DEBOUNCE_SECONDS": ("debounce_seconds",),
}


@dataclass
class ProxyConfig:
    prefixes: List[str] = field(default_factory=lambda: ["/api/"])
    target: Optional[str] = "http://localhost:8000"


@dataclass
class StaticConfig:
    dir: Path
    mount_point: str


@dataclass
class HttpConfig:
    host: str
    port: int
    proxy: ProxyConfig
    static: Optional[StaticConfig]


@dataclass
class CompilerConfig:
    command: List[str]


@dataclass
class Config:
    """Define the orchestrator configuration.

    Attributes:
        root (Path): The project directory (where ``live-rebuild.toml`` lives).
        workspace_root (Path): The directory that is watched.
        http (HttpConfig): Dev server settings.
        esbuild (BundleOptions): Bundler options for the full build.
        esbuild_path (Path): esbuild executable.
        compiler (CompilerConfig): Compile command.
        debounce_seconds (float): File event debounce interval. Defaults to 0.1.
        log_level (str): Logging level. Defaults to "INFO".
        log_file (Optional[str]): Optional log file path.
        lock_file (Path): Lock file created while watch mode runs.
    """

    root: Path
    workspace_root: Path
    http: HttpConfig
    esbuild: BundleOptions
    esbuild_path: Path
    compiler: CompilerConfig
    debounce_seconds: float = 0.1
    log_level: str = "INFO"
    log_file: Optional[str] = None
    lock_file: Path = Path(".bsb.lock")

    @property
    def project_config_file(self) -> Path:
        return self.root / PROJECT_CONFIG_FILE

    @property
    def build_config_files(self) -> List[Path]:
        """Files whose change invalidates the running orchestrator itself."""
        return [ENTRY_POINT_FILE, self.project_config_file]


def generate_config(root: Union[str, Path]) -> Dict[str, Any]:
    """Return the default configuration for a project rooted at ``root``.

    Args:
        root: The project directory.

    Returns:
        Dict[str, Any]: Raw (unvalidated) configuration values.
    """
    root = Path(root).absolute()
    return {
        "root": str(root),
        "workspace_root": None,
        "http": {
            "host": "127.0.0.1",
            "port": 8020,
            "proxy": {
                "prefixes": ["/api/"],
                "target": "http://localhost:8000",
            },
            "static": {
                "dir": "public",
                "mount_point": f"/{root.name}/",
            },
        },
        "esbuild": {
            "entry_points": {"bundle": str(root / "lib" / "es6" / "src" / "Index.bs.js")},
            "bundle": True,
            "minify": True,
            "sourcemap": True,
            "target": ["firefox85", "chrome89"],
            "loader": dict(DEFAULT_LOADERS),
            "outdir": str(root / "public" / "bundle"),
            "log_level": "info",
            "inject": [],
        },
        "esbuild_path": str(root / "node_modules" / ".bin" / "esbuild"),
        "compiler": {
            "command": [str(root / "node_modules" / ".bin" / "rescript"), "build", "-with-deps"],
        },
        "debounce_seconds": 0.1,
        "log_level": "INFO",
        "log_file": None,
        "lock_file": ".bsb.lock",
    }


def merge_options(*sources: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Deep-merge dictionaries left to right.

    Nested dictionaries are merged key by key; any other value (lists
    included) from a later source replaces the earlier one. Inputs are not
    modified.

    Example:
        >>> merge_options({"http": {"port": 1, "host": "a"}}, {"http": {"port": 2}})
        {'http': {'port': 2, 'host': 'a'}}
    """
    result: Dict[str, Any] = {}
    for source in sources:
        if not source:
            continue
        for key, value in source.items():
            if isinstance(value, dict) and isinstance(result.get(key), dict):
                result[key] = merge_options(result[key], value)
            else:
                result[key] = copy.deepcopy(value)
    return result


def _workspace_globs(package_json: Path) -> Optional[List[str]]:
    try:
        data = json.loads(package_json.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.debug(f"Skipping unreadable {package_json}: {e}")
        return None
    if not isinstance(data, dict):
        return None
    workspaces = data.get("workspaces")
    if isinstance(workspaces, dict):
        workspaces = workspaces.get("packages")
    if isinstance(workspaces, list):
        return [str(w) for w in workspaces]
    return None


def find_workspace_root(start_path: Union[str, Path]) -> Optional[Path]:
    """Find the enclosing package-manager workspace of ``start_path``.

    Walks upwards looking for a ``package.json`` with a ``workspaces`` field
    whose globs include ``start_path`` (or that sits in ``start_path`` itself).
    Catches OSError during traversal.

    Returns:
        Optional[Path]: The workspace root if found, else None.
    """
    try:
        path = Path(start_path).resolve()
        for parent in [path] + list(path.parents):
            package_json = parent / "package.json"
            if not package_json.is_file():
                continue
            globs = _workspace_globs(package_json)
            if globs is None:
                continue
            if parent == path:
                return parent
            rel = path.relative_to(parent).as_posix()
            if any(fnmatch(rel, g.rstrip("/")) for g in globs):
                return parent
    except OSError:
        pass
    return None


def _load_project_file(root: Path) -> Dict[str, Any]:
    path = root / PROJECT_CONFIG_FILE
    if not path.is_file():
        return {}
    logger.debug(f"Loading config from {path}")
    try:
        with path.open("rb") as f:
            return tomli.load(f)
    except (tomli.TOMLDecodeError, UnicodeDecodeError, OSError) as e:
        logger.error(f"Failed to parse config file {path}: {e}")
        return {}


def _env_values() -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for env_var, keys in ENV_MAP.items():
        val = os.getenv(env_var)
        if val is None or val == "":
            continue
        node = values
        for key in keys[:-1]:
            node = node.setdefault(key, {})
        node[keys[-1]] = val
    return values


def _resolve(root: Path, value: Union[str, Path]) -> Path:
    path = Path(os.path.expanduser(str(value)))
    if not path.is_absolute():
        path = root / path
    return path


def _as_int(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"Invalid integer for {name}: {value}")
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid integer for {name}: {value}") from e


def _as_float(value: Any, name: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid float for {name}: {value}") from e


def _as_str_list(value: Any, name: str) -> List[str]:
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list):
        raise ValueError(f"{name} must be a list of strings, got {type(value).__name__}")
    return [str(v) for v in value]


def _build_config(values: Dict[str, Any]) -> Config:
    """Validate raw values and build the :class:`Config` tree.

    Raises:
        ValueError: On any invalid value.
    """
    root = Path(values["root"]).absolute()

    http_values = values.get("http") or {}
    port = _as_int(http_values.get("port", 8020), "http.port")
    if not (0 <= port <= 65535):
        raise ValueError(f"Port must be between 0 and 65535, got {port}")

    proxy_values = http_values.get("proxy") or {}
    target = proxy_values.get("target") or None
    proxy = ProxyConfig(
        prefixes=_as_str_list(proxy_values.get("prefixes", []), "http.proxy.prefixes"),
        target=str(target) if target else None,
    )

    static: Optional[StaticConfig] = None
    static_values = http_values.get("static")
    if static_values:
        mount_point = str(static_values.get("mount_point", "/"))
        if not mount_point.startswith("/"):
            mount_point = "/" + mount_point
        if not mount_point.endswith("/"):
            mount_point += "/"
        static = StaticConfig(dir=_resolve(root, static_values.get("dir", "public")), mount_point=mount_point)

    http = HttpConfig(host=str(http_values.get("host", "127.0.0.1")), port=port, proxy=proxy, static=static)

    esbuild_values = dict(values.get("esbuild") or {})
    entry_points = esbuild_values.get("entry_points") or {}
    if not isinstance(entry_points, dict) or not entry_points:
        raise ValueError("esbuild.entry_points must be a non-empty table of name = path")
    loader = esbuild_values.get("loader") or {}
    if not isinstance(loader, dict):
        raise ValueError("esbuild.loader must be a table of extension = loader")
    esbuild = BundleOptions(
        entry_points={str(k): str(_resolve(root, v)) for k, v in entry_points.items()},
        outdir=str(_resolve(root, esbuild_values.get("outdir", "public/bundle"))),
        bundle=bool(esbuild_values.get("bundle", True)),
        minify=bool(esbuild_values.get("minify", True)),
        sourcemap=bool(esbuild_values.get("sourcemap", True)),
        target=_as_str_list(esbuild_values.get("target", []), "esbuild.target"),
        loader={str(k): str(v) for k, v in loader.items()},
        log_level=str(esbuild_values.get("log_level", "info")),
        inject=[str(_resolve(root, p)) for p in _as_str_list(esbuild_values.get("inject", []), "esbuild.inject")],
    )

    compiler_values = values.get("compiler") or {}
    command = _as_str_list(compiler_values.get("command", []), "compiler.command")
    if not command:
        raise ValueError("compiler.command must not be empty")

    debounce_seconds = _as_float(values.get("debounce_seconds", 0.1), "debounce_seconds")
    if debounce_seconds < 0:
        raise ValueError(f"debounce_seconds must be non-negative, got {debounce_seconds}")

    log_level = str(values.get("log_level") or "INFO").upper()
    if not isinstance(getattr(logging, log_level, None), int):
        raise ValueError(f"Invalid log level: {values.get('log_level')}")

    workspace_root = values.get("workspace_root")
    if workspace_root:
        workspace = _resolve(root, workspace_root)
    else:
        workspace = find_workspace_root(root) or root

    log_file = values.get("log_file") or None

    return Config(
        root=root,
        workspace_root=workspace,
        http=http,
        esbuild=esbuild,
        esbuild_path=_resolve(root, values.get("esbuild_path", "node_modules/.bin/esbuild")),
        compiler=CompilerConfig(command=command),
        debounce_seconds=debounce_seconds,
        log_level=log_level,
        log_file=str(_resolve(root, log_file)) if log_file else None,
        lock_file=_resolve(root, values.get("lock_file", ".bsb.lock")),
    )


def load_config(args: Dict[str, Any]) -> Config:
    """Load and validate configuration with strict priority, returning a Config object.

    Args:
        args (Dict[str, Any]): Parsed CLI arguments, typically
            ``vars(parser.parse_args())``. Recognized keys: ``root``,
            ``override`` (a dict, or a JSON object string), ``port``,
            ``log_level``, ``log_file``, ``debounce_seconds``, ``debug``.
            Values of None are ignored.

    Returns:
        Config: The fully resolved and validated configuration.

    Raises:
        ValueError: If the override is not a JSON object or any value is invalid.

    Examples:
        >>> config = load_config({"root": "/work/app", "port": 9000})
        >>> config.http.port
        9000
    """
    root = Path(args.get("root") or os.getcwd()).absolute()

    override = args.get("override")
    if isinstance(override, str):
        try:
            override = json.loads(override) if override.strip() else {}
        except ValueError as e:
            raise ValueError(f"Invalid JSON override: {e}") from e
    if override is not None and not isinstance(override, dict):
        raise ValueError("JSON override must be an object")

    cli: Dict[str, Any] = {}
    if args.get("port") is not None:
        cli["http"] = {"port": args["port"]}
    for key in ("log_level", "log_file", "debounce_seconds"):
        if args.get(key) is not None:
            cli[key] = args[key]
    if args.get("debug"):
        cli["log_level"] = "DEBUG"

    values = merge_options(
        generate_config(root),
        _load_project_file(root),
        _env_values(),
        override,
        cli,
    )
    # The project root is decided by the caller, never by a config source
    values["root"] = str(root)
    return _build_config(values)


def config_to_dict(config: Config) -> Dict[str, Any]:
    """Return the configuration as JSON-serializable data (for ``dump-config``)."""

    def convert(value: Any) -> Any:
        if isinstance(value, Path):
            return str(value)
        if isinstance(value, dict):
            return {k: convert(v) for k, v in value.items()}
        if isinstance(value, list):
            return [convert(v) for v in value]
        return value

    return convert(asdict(config))
