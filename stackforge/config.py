"""
Configuration management for stackforge.

Loads stackforge.yaml once at startup into an immutable StackforgeConfig that
is passed explicitly to the registry, the checkpoint store and the engine.
Nothing inside those components reads the environment directly.

Search order for the config file:
1. Explicit path (``--config``)
2. $STACKFORGE_CONFIG
3. ./stackforge.yaml
4. $STACKFORGE_HOME/config.yaml (default ~/.config/stackforge)

Environment overrides (applied after the file):
    STACKFORGE_PROFILE      default profile
    STACKFORGE_STATE_DIR    checkpoint directory
    STACKFORGE_LOG_LEVEL    logging level
    STACKFORGE_FLAG_<NAME>  feature flag, "true"/"false"
"""

import os
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml
from dotenv import load_dotenv

from stackforge.errors import ConfigurationError

CONFIG_FILENAME = "stackforge.yaml"
FLAG_ENV_PREFIX = "STACKFORGE_FLAG_"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def get_stackforge_home() -> Path:
    """Return the user-level config directory."""
    home = os.environ.get("STACKFORGE_HOME")
    if home:
        return Path(home).expanduser()
    return Path("~/.config/stackforge").expanduser()


def parse_flag(value: Any) -> bool:
    """Parse a feature-flag value from YAML or the environment."""
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"Invalid flag value: {value!r} (expected true/false)")


@dataclass(frozen=True)
class StackforgeConfig:
    """
    Immutable run configuration.

    Attributes:
        project_root: Directory operations run in
        registry_path: Phase/operation registry file
        state_dir: Directory for the checkpoint log and run marker
        handoff_dir: Directory handoff artifacts are written to
        log_file: Log file path ("{date}" is interpolated)
        log_level: Logging level name
        log_format: "structured" (JSON lines) or "pretty"
        console_output: Also log to the console
        default_profile: Profile applied when none is given on the command line
        operation_timeout: Default per-operation timeout in seconds (None = no limit)
        flags: Feature flags, overridden by profiles and STACKFORGE_FLAG_*
        env_file: Dotenv file loaded at startup
        config_path: File this configuration was loaded from, if any
    """
    project_root: Path = field(default_factory=Path.cwd)
    registry_path: Path = Path("phases.yaml")
    state_dir: Path = Path(".stackforge/state")
    handoff_dir: Path = Path(".stackforge/handoffs")
    log_file: str = ".stackforge/logs/stackforge-{date}.log"
    log_level: str = "INFO"
    log_format: str = "structured"
    console_output: bool = True
    default_profile: Optional[str] = None
    operation_timeout: Optional[float] = 600.0
    flags: Mapping[str, bool] = field(default_factory=dict)
    env_file: Optional[Path] = None
    config_path: Optional[Path] = None

    def __post_init__(self):
        root = Path(self.project_root).expanduser()
        object.__setattr__(self, "project_root", root)
        for name in ("registry_path", "state_dir", "handoff_dir"):
            object.__setattr__(self, name, self._resolve(getattr(self, name)))
        if self.env_file is not None:
            object.__setattr__(self, "env_file", self._resolve(self.env_file))
        if self.log_format not in ("structured", "pretty"):
            raise ConfigurationError(
                f"Invalid log_format: {self.log_format!r} (expected 'structured' or 'pretty')"
            )
        if self.log_level not in LOG_LEVELS:
            raise ConfigurationError(
                f"Invalid log_level: {self.log_level!r} (expected one of {', '.join(LOG_LEVELS)})"
            )
        if self.operation_timeout is not None and self.operation_timeout <= 0:
            raise ConfigurationError("operation_timeout must be positive")
        object.__setattr__(self, "flags", dict(self.flags))

    def _resolve(self, value: Any) -> Path:
        path = Path(value).expanduser()
        if not path.is_absolute():
            path = self.project_root / path
        return path

    def get_log_file_path(self) -> Path:
        """Get log file path with date interpolation."""
        log_output = self.log_file.replace("{date}", datetime.now().strftime("%Y-%m-%d"))
        return self._resolve(log_output)

    def flag(self, name: str, default: bool = True) -> bool:
        return self.flags.get(name, default)

    def with_overrides(self, **changes: Any) -> "StackforgeConfig":
        """Return a copy with fields replaced (used by the CLI for flags like --verbose)."""
        return replace(self, **changes)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], base_dir: Optional[Path] = None) -> "StackforgeConfig":
        """Build a config from a parsed YAML mapping."""
        known = {
            "project_root", "registry", "state_dir", "handoff_dir", "log_file",
            "log_level", "log_format", "console", "default_profile",
            "operation_timeout", "flags", "env_file",
        }
        unknown = set(data) - known
        if unknown:
            raise ConfigurationError(f"Unknown config keys: {', '.join(sorted(unknown))}")

        base_dir = base_dir or Path.cwd()
        root = Path(str(data.get("project_root", "."))).expanduser()
        if not root.is_absolute():
            root = (base_dir / root).resolve()

        flags_raw = data.get("flags") or {}
        if not isinstance(flags_raw, dict):
            raise ConfigurationError("'flags' must be a mapping of NAME: true/false")

        timeout = data.get("operation_timeout", 600)
        try:
            timeout = float(timeout) if timeout is not None else None
        except (TypeError, ValueError):
            raise ConfigurationError(f"Invalid operation_timeout: {timeout!r}")

        return cls(
            project_root=root,
            registry_path=Path(str(data.get("registry", "phases.yaml"))),
            state_dir=Path(str(data.get("state_dir", ".stackforge/state"))),
            handoff_dir=Path(str(data.get("handoff_dir", ".stackforge/handoffs"))),
            log_file=str(data.get("log_file", ".stackforge/logs/stackforge-{date}.log")),
            log_level=str(data.get("log_level", "INFO")).upper(),
            log_format=str(data.get("log_format", "structured")),
            console_output=bool(data.get("console", True)),
            default_profile=data.get("default_profile"),
            operation_timeout=timeout,
            flags={str(k): parse_flag(v) for k, v in flags_raw.items()},
            env_file=Path(str(data["env_file"])) if data.get("env_file") else None,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the YAML layout."""
        return {
            "project_root": str(self.project_root),
            "registry": str(self.registry_path),
            "state_dir": str(self.state_dir),
            "handoff_dir": str(self.handoff_dir),
            "log_file": self.log_file,
            "log_level": self.log_level,
            "log_format": self.log_format,
            "console": self.console_output,
            "default_profile": self.default_profile,
            "operation_timeout": self.operation_timeout,
            "flags": dict(self.flags),
        }


def find_config_file(config_path: Optional[Path] = None) -> Optional[Path]:
    """Locate the config file following the documented search order."""
    if config_path is not None:
        path = Path(config_path).expanduser()
        if not path.exists():
            raise ConfigurationError(f"Configuration file not found: {path}")
        return path

    env_path = os.environ.get("STACKFORGE_CONFIG")
    if env_path:
        path = Path(env_path).expanduser()
        if not path.exists():
            raise ConfigurationError(f"STACKFORGE_CONFIG points to a missing file: {path}")
        return path

    for candidate in (Path.cwd() / CONFIG_FILENAME, get_stackforge_home() / "config.yaml"):
        if candidate.exists():
            return candidate
    return None


def _apply_env_overrides(config: StackforgeConfig, environ: Mapping[str, str]) -> StackforgeConfig:
    changes: dict[str, Any] = {}
    if environ.get("STACKFORGE_PROFILE"):
        changes["default_profile"] = environ["STACKFORGE_PROFILE"]
    if environ.get("STACKFORGE_STATE_DIR"):
        changes["state_dir"] = Path(environ["STACKFORGE_STATE_DIR"])
    if environ.get("STACKFORGE_LOG_LEVEL"):
        changes["log_level"] = environ["STACKFORGE_LOG_LEVEL"].upper()

    flags = dict(config.flags)
    for key, value in environ.items():
        if key.startswith(FLAG_ENV_PREFIX) and len(key) > len(FLAG_ENV_PREFIX):
            flags[key[len(FLAG_ENV_PREFIX):]] = parse_flag(value)
    if flags != dict(config.flags):
        changes["flags"] = flags

    return replace(config, **changes) if changes else config


def load_config(config_path: Optional[Path] = None) -> StackforgeConfig:
    """
    Load stackforge configuration.

    Args:
        config_path: Explicit config file. When omitted the search order in the
            module docstring is used; with no file found, defaults rooted at
            the current directory are returned.

    Returns:
        StackforgeConfig instance

    Raises:
        ConfigurationError: If the config file is missing, unreadable or invalid
    """
    path = find_config_file(config_path)

    if path is None:
        config = StackforgeConfig(project_root=Path.cwd())
    else:
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {path}: {e}")
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file {path}: {e}")
        if not isinstance(data, dict):
            raise ConfigurationError(f"Configuration file {path} must contain a mapping")
        config = replace(StackforgeConfig.from_dict(data, base_dir=path.parent.resolve()), config_path=path)

    if config.env_file is not None and config.env_file.exists():
        load_dotenv(config.env_file, override=False)

    return _apply_env_overrides(config, os.environ)
