# File: r_lsp_shim/config/loader.py

"""Loads and manages the shim's configuration from multiple sources.

This module reads configuration settings from a YAML file (defaults) and
environment variables (overrides). The path of the YAML file (`config.yml`)
is determined by:
1. Checking the `R_LSP_SHIM_CONFIG_FILE` environment variable.
2. Searching upwards from this file's location for a project root marker
   (`pyproject.toml`) and looking for the file in that root directory.
3. As a fallback, looking in the current working directory (with a warning).

The loaded configuration is exposed via the singleton dictionary `APP_CONFIG`.
`LspSettings` offers a typed, defaulted view of its `lsp` section, which is
what the session and transport layers consume.
"""

import logging
import os
import pathlib
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)
# Provide a default handler when the embedding application has not configured
# logging yet.
if not logging.getLogger().hasHandlers():
    logging.basicConfig(
        level=logging.INFO, format="%(levelname)s: [%(name)s] %(message)s"
    )

DEFAULT_CONFIG_FILENAME = "config.yml"
PROJECT_ROOT_MARKER = "pyproject.toml"

ENV_CONFIG_PATH = "R_LSP_SHIM_CONFIG_FILE"


def _to_bool(value: str) -> bool:
    """Converts an environment variable string to a boolean.

    Raises:
        ValueError: If the string is not a recognised boolean spelling.
    """
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off", ""):
        return False
    raise ValueError(f"not a boolean: {value!r}")


# Maps environment variables to nested configuration keys for OVERRIDING
# specific values within the loaded config.
# Format: (ENV_VARIABLE_NAME, [list, of, config, keys], conversion_callable)
ENV_OVERRIDES: List[Tuple[str, List[str], Callable[[str], Any]]] = [
    ("R_LSP_DEBUG", ["lsp", "debug"], _to_bool),
    ("R_LSP_USE_STDIO", ["lsp", "use_stdio"], _to_bool),
    ("R_LSP_PATH", ["lsp", "path"], str),
    ("R_LSP_LANG", ["lsp", "lang"], str),
    ("R_LSP_CONNECT_TIMEOUT", ["lsp", "connect_timeout"], float),
]


def _find_project_root(
    start_path: pathlib.Path, marker_filename: str = PROJECT_ROOT_MARKER
) -> Optional[pathlib.Path]:
    """Searches upward from start_path for a directory containing marker_filename.

    Args:
        start_path: The directory path to begin the search from.
        marker_filename: The filename to look for as the project root indicator.

    Returns:
        The Path object for the directory containing the marker file, or None if
        not found before reaching the filesystem root.
    """
    current_path = start_path.resolve()
    while True:
        if (current_path / marker_filename).is_file():
            logger.debug(
                f"Found project root marker '{marker_filename}' at '{current_path}'"
            )
            return current_path
        parent_path = current_path.parent
        if parent_path == current_path:
            logger.debug(
                f"Project root marker '{marker_filename}' not found searching "
                f"from '{start_path}'."
            )
            return None
        current_path = parent_path


def _update_nested_dict(d: Dict[str, Any], keys: List[str], value: Any) -> None:
    """Sets a value in a nested dictionary based on a list of keys.

    Creates intermediate dictionaries if they don't exist. Logs an error
    if a path conflict occurs (e.g., expecting a dict but finding a non-dict).
    """
    node = d
    for key in keys[:-1]:
        child = node.setdefault(key, {})
        if not isinstance(child, dict):
            logger.error(
                f"Config structure conflict: Expected dict at '{key}' "
                f"while setting path '{'.'.join(keys)}', but found type "
                f"{type(child)}. Cannot apply value '{value}'."
            )
            return
        node = child
    node[keys[-1]] = value


def _resolve_config_path() -> pathlib.Path:
    """Determines which YAML file to read, in priority order."""
    env_config_path_str = os.getenv(ENV_CONFIG_PATH)
    if env_config_path_str:
        logger.info(
            f"Using config path from environment variable {ENV_CONFIG_PATH}: "
            f"'{env_config_path_str}'"
        )
        return pathlib.Path(env_config_path_str).resolve()

    project_root = _find_project_root(start_path=pathlib.Path(__file__).parent)
    if project_root:
        logger.debug(f"Determined project root: '{project_root}'")
        return (project_root / DEFAULT_CONFIG_FILENAME).resolve()

    logger.warning(
        f"Could not find project root marker '{PROJECT_ROOT_MARKER}'. "
        "Falling back to current working directory for the config path."
    )
    return (pathlib.Path.cwd() / DEFAULT_CONFIG_FILENAME).resolve()


def load_configuration(
    config_path: Optional[pathlib.Path] = None,
    dotenv_path: Optional[str] = None,
    env_override_map: List[Tuple[str, List[str], Callable[[str], Any]]] = ENV_OVERRIDES,
) -> Dict[str, Any]:
    """Loads configuration layers: YAML defaults, then environment overrides.

    Args:
        config_path: Explicit YAML file to read. If None, the path is resolved
            from `R_LSP_SHIM_CONFIG_FILE`, the project root, or the CWD.
        dotenv_path: Explicit path to the .env file. If None, `python-dotenv`
            searches standard locations.
        env_override_map: The mapping defining which environment variables
            override which configuration keys and how they are converted.

    Returns:
        A dictionary containing the merged configuration. Returns an empty
        dictionary if the YAML file exists but cannot be parsed.
    """
    config: Dict[str, Any] = {}
    effective_config_path = config_path or _resolve_config_path()

    try:
        with open(effective_config_path, encoding="utf-8") as f:
            loaded_yaml = yaml.safe_load(f)
            config = loaded_yaml if isinstance(loaded_yaml, dict) else {}
        logger.info(f"Loaded base config from '{effective_config_path}'.")
    except FileNotFoundError:
        logger.warning(
            f"Base config file '{effective_config_path}' not found, using defaults."
        )
    except yaml.YAMLError as e:
        logger.error(
            f"Error parsing YAML '{effective_config_path}': {e}", exc_info=True
        )
        return {}
    except OSError as e:
        logger.error(
            f"Unexpected error loading '{effective_config_path}': {e}", exc_info=True
        )
        return {}

    try:
        if load_dotenv(dotenv_path=dotenv_path, override=True):
            logger.info(".env file loaded into environment variables.")
        else:
            logger.debug(".env file not found or empty.")
    except OSError as e:
        logger.error(f"Error loading .env file: {e}", exc_info=True)

    override_count = 0
    for env_var, config_keys, convert in env_override_map:
        env_value_str = os.getenv(env_var)
        if env_value_str is None:
            continue
        try:
            typed_value = convert(env_value_str)
        except ValueError:
            logger.warning(
                f"Value override failed: Cannot convert env var '{env_var}' "
                f"value '{env_value_str}' with {getattr(convert, '__name__', convert)}."
            )
            continue
        _update_nested_dict(config, config_keys, typed_value)
        logger.info(
            f"Applied value override: '{'.'.join(config_keys)}' = '{typed_value}' "
            f"(from env '{env_var}')"
        )
        override_count += 1
    if override_count:
        logger.info(f"Applied {override_count} environment variable override(s).")

    return config


@dataclass(frozen=True)
class LspSettings:
    """Typed view of the `lsp` configuration section.

    Attributes:
        debug: Log diagnostics and start the server in debug mode.
        use_stdio: Prefer the direct-pipe transport where the platform allows.
        args: Extra command line arguments for the R binary.
        lang: Locale forced into `LANG`; empty keeps the inherited value.
        path: Explicit R binary path; empty means look it up on PATH.
        connect_timeout: Seconds to wait for the server channel, or None to
            wait indefinitely.
        initialize_timeout: Seconds to wait for the `initialize` response.
        shutdown_timeout: Seconds allowed for graceful shutdown and process
            termination.
    """

    debug: bool = False
    use_stdio: bool = False
    args: List[str] = field(default_factory=list)
    lang: str = ""
    path: str = ""
    connect_timeout: Optional[float] = None
    initialize_timeout: float = 30.0
    shutdown_timeout: float = 5.0

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "LspSettings":
        """Builds settings from a full configuration dictionary."""
        section = config.get("lsp") or {}
        if not isinstance(section, dict):
            logger.warning(f"Ignoring non-mapping 'lsp' config section: {section!r}")
            section = {}
        connect_timeout = section.get("connect_timeout")
        return cls(
            debug=bool(section.get("debug", False)),
            use_stdio=bool(section.get("use_stdio", False)),
            args=[str(a) for a in section.get("args") or []],
            lang=str(section.get("lang") or ""),
            path=str(section.get("path") or ""),
            connect_timeout=(
                float(connect_timeout) if connect_timeout is not None else None
            ),
            initialize_timeout=float(section.get("initialize_timeout", 30.0)),
            shutdown_timeout=float(section.get("shutdown_timeout", 5.0)),
        )

    def as_section(self) -> Dict[str, Any]:
        """Returns the settings in the shape pushed to the server as `r.lsp`."""
        return {
            "debug": self.debug,
            "use_stdio": self.use_stdio,
            "args": list(self.args),
            "lang": self.lang,
            "path": self.path,
        }


# Loaded once when this module is first imported.
APP_CONFIG: Dict[str, Any] = load_configuration()


def get_lsp_settings(config: Optional[Dict[str, Any]] = None) -> LspSettings:
    """Returns the typed `lsp` settings of `config` (default `APP_CONFIG`)."""
    return LspSettings.from_config(APP_CONFIG if config is None else config)
