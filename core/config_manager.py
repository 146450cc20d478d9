import os
import re
import json
import dataclasses
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple
from core.logging_utils import log_json
from core.exceptions import ConfigurationError

# ---------------------------------------------------------------------------
# Value validators: each returns (is_valid: bool, coerced_value, reason: str)
# ---------------------------------------------------------------------------

def _validate_positive_int(key: str, val: Any) -> Tuple[bool, Any, str]:
    if isinstance(val, bool):
        return False, None, f"{key} must be an integer, got {val!r}"
    try:
        v = int(val)
        if v > 0:
            return True, v, ""
        return False, None, f"{key} must be a positive integer, got {val!r}"
    except (ValueError, TypeError):
        return False, None, f"{key} must be an integer, got {val!r}"


def _validate_non_negative_int(key: str, val: Any) -> Tuple[bool, Any, str]:
    if isinstance(val, bool):
        return False, None, f"{key} must be an integer, got {val!r}"
    try:
        v = int(val)
        if v >= 0:
            return True, v, ""
        return False, None, f"{key} must be >= 0, got {val!r}"
    except (ValueError, TypeError):
        return False, None, f"{key} must be an integer, got {val!r}"


def _validate_optional_positive_int(key: str, val: Any) -> Tuple[bool, Any, str]:
    if val is None:
        return True, None, ""
    return _validate_positive_int(key, val)


def _validate_bool(key: str, val: Any) -> Tuple[bool, Any, str]:
    if isinstance(val, bool):
        return True, val, ""
    if isinstance(val, str) and val.lower() in ("true", "false", "1", "0", "yes", "no"):
        return True, val.lower() in ("true", "1", "yes"), ""
    return False, None, f"{key} must be a boolean, got {val!r}"


def _validate_string(key: str, val: Any) -> Tuple[bool, Any, str]:
    if val is None or isinstance(val, str):
        return True, val, ""
    return False, None, f"{key} must be a string, got {val!r}"


def _validate_positive_float(key: str, val: Any) -> Tuple[bool, Any, str]:
    try:
        v = float(val)
        if v > 0:
            return True, v, ""
        return False, None, f"{key} must be positive, got {val!r}"
    except (ValueError, TypeError):
        return False, None, f"{key} must be a number, got {val!r}"


# Key → validator function (None = no validation, just pass through)
_KEY_VALIDATORS = {
    "max_iterations":        _validate_positive_int,
    "max_retries":           _validate_positive_int,
    "max_time_ms":           _validate_positive_int,
    "auto_heal":             _validate_bool,
    "persist_memory":        _validate_bool,
    "dangerous_commands_allowed": _validate_bool,
    "verbose":               _validate_bool,
    "working_directory":     _validate_string,
    "llm_timeout_s":         _validate_positive_float,
    "tool_timeout_s":        _validate_positive_float,
    "memory_store_path":     _validate_string,
    "stuck_repeat_threshold": _validate_positive_int,
    "stuck_window":          _validate_positive_int,
    "low_progress_iterations": _validate_positive_int,
    "low_progress_reflections": _validate_positive_int,
    "max_plan_revisions":    _validate_non_negative_int,
    "max_healing_attempts":  _validate_positive_int,
    "max_tokens":            _validate_optional_positive_int,
    "model_name":            _validate_string,
    "api_key":               _validate_string,
    "openai_api_key":        _validate_string,
    "local_model_command":   _validate_string,
    "typecheck_command":     _validate_string,
}

DEFAULT_CONFIG: Dict[str, Any] = {
    "max_iterations": 100,
    "max_retries": 3,
    "max_time_ms": 1_800_000,
    "auto_heal": True,
    "persist_memory": True,
    "dangerous_commands_allowed": False,
    "verbose": True,
    "working_directory": ".",
    "llm_timeout_s": 60.0,
    "tool_timeout_s": 300.0,
    "memory_store_path": ".taskloop/memory",
    "stuck_repeat_threshold": 3,
    "stuck_window": 20,
    "low_progress_iterations": 10,
    "low_progress_reflections": 5,
    "max_plan_revisions": 5,
    "max_healing_attempts": 3,
    "max_tokens": None,
    "model_name": "openrouter/auto",
    "api_key": None,
    "openai_api_key": None,
    "local_model_command": None,
    "typecheck_command": "python -m mypy --ignore-missing-imports .",
}

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


def _snake(key: str) -> str:
    return _CAMEL_RE.sub("_", key).lower()


@dataclass
class AgentConfig:
    """Effective settings for one agent run."""
    max_iterations: int = 100
    max_retries: int = 3
    max_time_ms: int = 1_800_000
    auto_heal: bool = True
    persist_memory: bool = True
    dangerous_commands_allowed: bool = False
    verbose: bool = True
    working_directory: str = "."
    llm_timeout_s: float = 60.0
    tool_timeout_s: float = 300.0
    memory_store_path: str = ".taskloop/memory"
    stuck_repeat_threshold: int = 3
    stuck_window: int = 20
    low_progress_iterations: int = 10
    low_progress_reflections: int = 5
    max_plan_revisions: int = 5
    max_healing_attempts: int = 3
    max_tokens: Optional[int] = None
    typecheck_command: str = "python -m mypy --ignore-missing-imports ."

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "AgentConfig":
        """Build a config from snake_case or camelCase keys; unknown keys are ignored."""
        known = {f.name for f in dataclasses.fields(cls)}
        kwargs: Dict[str, Any] = {}
        for raw_key, value in (data or {}).items():
            key = _snake(raw_key)
            if key not in known:
                continue
            validator = _KEY_VALIDATORS.get(key)
            if validator is not None:
                ok, coerced, reason = validator(key, value)
                if not ok:
                    raise ConfigurationError(reason)
                value = coerced
            kwargs[key] = value
        return cls(**kwargs)

    def replace(self, **changes: Any) -> "AgentConfig":
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


class ConfigManager:
    """
    Centralized configuration manager for taskloop.
    Enforces a tiered strategy: (Overrides > ENV > JSON > Defaults).
    """
    def __init__(self, config_file="taskloop.config.json", overrides: Optional[Dict[str, Any]] = None,
                 environ: Optional[Dict[str, str]] = None):
        self.config_file = Path(config_file)
        self.runtime_overrides = {_snake(k): v for k, v in (overrides or {}).items()}
        self.environ = environ if environ is not None else os.environ
        self.file_config: Dict[str, Any] = {}
        self.effective_config: Dict[str, Any] = {}

        self.refresh()

    def _load_from_file(self) -> Dict[str, Any]:
        if not self.config_file.exists():
            return {}
        try:
            with open(self.config_file, 'r') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            log_json("ERROR", "config_parse_failed", details={"path": str(self.config_file), "error": str(e)})
            raise ConfigurationError(f"Failed to parse config file: {e}")
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {self.config_file} must contain a JSON object")
        log_json("DEBUG", "config_loaded_from_file", details={"path": str(self.config_file)})
        return {_snake(k): v for k, v in data.items()}

    def _load_from_env(self) -> Dict[str, Any]:
        env_config = {}

        env_mappings = {
            "OPENROUTER_API_KEY": "api_key",
            "OPENAI_API_KEY": "openai_api_key",
            "TASKLOOP_LOCAL_MODEL_COMMAND": "local_model_command",
        }
        for env_key, config_key in env_mappings.items():
            if env_key in self.environ:
                env_config[config_key] = self.environ[env_key]

        # TASKLOOP_* overrides for all keys in DEFAULT_CONFIG
        for key, default in DEFAULT_CONFIG.items():
            env_key = f"TASKLOOP_{key.upper()}"
            if env_key not in self.environ:
                continue
            val = self.environ[env_key]
            try:
                if isinstance(default, bool):
                    env_config[key] = val.lower() in ("true", "1", "yes")
                elif isinstance(default, int):
                    env_config[key] = int(val)
                elif isinstance(default, float):
                    env_config[key] = float(val)
                else:
                    env_config[key] = val
            except (ValueError, TypeError):
                log_json("WARN", "config_env_coercion_failed", details={"key": key, "val": val})
                # Skip this key, let it fall back to JSON/Default
                continue
        return env_config

    def refresh(self):
        """Re-evaluates the effective configuration based on the tier hierarchy."""
        self.file_config = self._load_from_file()
        merged = dict(DEFAULT_CONFIG)
        merged.update(self.file_config)
        merged.update(self._load_from_env())
        merged.update(self.runtime_overrides)
        self.effective_config = merged

    def _validate_value(self, key: str, value: Any) -> Any:
        """Validate *value* for *key*; return coerced value or DEFAULT_CONFIG fallback on error."""
        validator = _KEY_VALIDATORS.get(key)
        if validator is None:
            return value
        ok, coerced, reason = validator(key, value)
        if ok:
            return coerced
        default = DEFAULT_CONFIG.get(key)
        log_json("ERROR", "config_value_invalid",
                 details={"key": key, "value": value, "reason": reason,
                          "fallback": default})
        return default

    def get(self, key: str, default: Any = None) -> Any:
        """Retrieves a configuration value from the effective config."""
        val = self.effective_config.get(key, default)
        return self._validate_value(key, val) if key in _KEY_VALIDATORS else val

    def show_config(self) -> Dict[str, Any]:
        """Return the effective config dict."""
        return dict(self.effective_config)

    def set_runtime_override(self, key: str, value: Any):
        """Sets a temporary runtime override."""
        self.runtime_overrides[_snake(key)] = value
        self.refresh()

    def agent_config(self) -> AgentConfig:
        """Materialize the validated effective settings as an AgentConfig."""
        fields = {f.name for f in dataclasses.fields(AgentConfig)}
        return AgentConfig(**{k: self.get(k) for k in fields if k in self.effective_config})

    def bootstrap(self):
        """Generates a default taskloop.config.json if it doesn't exist."""
        if self.config_file.exists():
            log_json("INFO", "config_bootstrap_skipped_exists")
            return
        bootstrap_data = {k: DEFAULT_CONFIG[k] for k in ("max_iterations", "max_time_ms", "auto_heal", "model_name")}
        with open(self.config_file, 'w') as f:
            json.dump(bootstrap_data, f, indent=4)
        log_json("INFO", "config_bootstrapped", details={"path": str(self.config_file)})
