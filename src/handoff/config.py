"""Configuration system using platformdirs for cross-platform paths."""

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

import platformdirs

APP_NAME = "handoff"
APP_AUTHOR = "handoff"


@dataclass
class Config:
	"""Central configuration with XDG/platform conventions."""

	config_dir: Path = field(default_factory=lambda: Path(platformdirs.user_config_dir(APP_NAME)))
	data_dir: Path = field(default_factory=lambda: Path(platformdirs.user_data_dir(APP_NAME)))

	# Derived paths
	db_path: Path = field(init=False)
	log_dir: Path = field(init=False)

	# Session autosave
	autosave_debounce: float = 0.1
	autosave_interval: float = 5.0

	# Planning / execution
	max_subtasks: int = 3
	max_attempts: int = 3
	worker_timeout: float = 300.0
	# Command run for live workers (prompt on stdin); empty = no executor
	worker_command: str = ""
	plan_retention_days: int = 7

	# Priority queue
	queue_max_retries: int = 3
	queue_throttle: float = 0.0

	def __post_init__(self) -> None:
		self.db_path = self.data_dir / "handoff.db"
		self.log_dir = self.data_dir / "logs"

	def ensure_dirs(self) -> None:
		"""Create all required directories."""
		self.config_dir.mkdir(parents=True, exist_ok=True)
		self.data_dir.mkdir(parents=True, exist_ok=True)
		self.log_dir.mkdir(parents=True, exist_ok=True)


_PATH_FIELDS = {"config_dir", "data_dir"}
_FLOAT_FIELDS = {"autosave_debounce", "autosave_interval", "worker_timeout", "queue_throttle"}
_INT_FIELDS = {"max_subtasks", "max_attempts", "plan_retention_days", "queue_max_retries"}
_STR_FIELDS = {"worker_command"}


def _coerce(key: str, val):
	if key in _PATH_FIELDS:
		return Path(os.path.expanduser(str(val)))
	if key in _FLOAT_FIELDS:
		return float(val)
	if key in _INT_FIELDS:
		return int(val)
	return val


def _apply_env_overrides(config: Config) -> Config:
	"""Apply HANDOFF_* environment variable overrides."""
	for attr in _PATH_FIELDS | _FLOAT_FIELDS | _INT_FIELDS | _STR_FIELDS:
		val = os.getenv(f"HANDOFF_{attr.upper()}")
		if val:
			setattr(config, attr, _coerce(attr, val))
	# Recompute derived paths after overrides
	config.__post_init__()
	return config


def _apply_toml(config: Config) -> Config:
	"""Apply config.toml overrides if file exists."""
	toml_path = config.config_dir / "config.toml"
	if not toml_path.exists():
		return config

	with open(toml_path, "rb") as f:
		data = tomllib.load(f)

	for key, val in data.items():
		if key in _PATH_FIELDS | _FLOAT_FIELDS | _INT_FIELDS | _STR_FIELDS:
			setattr(config, key, _coerce(key, val))

	# Recompute derived paths after toml overrides
	config.__post_init__()
	return config


def load_config() -> Config:
	"""Load config with precedence: env vars > config.toml > defaults."""
	config = Config()
	# config_dir itself may be redirected by the environment
	env_config_dir = os.getenv("HANDOFF_CONFIG_DIR")
	if env_config_dir:
		config.config_dir = Path(env_config_dir)
	config = _apply_toml(config)
	config = _apply_env_overrides(config)
	config.ensure_dirs()
	return config


# Singleton
_config: Config | None = None


def get_config() -> Config:
	"""Get or create the global config instance."""
	global _config
	if _config is None:
		_config = load_config()
	return _config


def reset_config() -> None:
	"""Drop the cached config so the next get_config() reloads it."""
	global _config
	_config = None
