from typing import Any, Dict, Optional
import json
import os
import tomllib

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from loguru import logger

from .events import Signal

# --- Settings Models ---
class GeneralSettings(BaseModel):
    debug_mode: bool = False
    log_dir: Optional[str] = None

class HttpSettings(BaseModel):
    base_url: str = ""
    timeout: float = 30.0
    pages_path: str = "/ui/pages"
    headers: Dict[str, str] = Field(default_factory=dict)

class CacheSettings(BaseModel):
    default_ttl: float = 300.0  # seconds
    max_entries: int = 100

class WebSocketSettings(BaseModel):
    url: str = ""
    reconnect: bool = True
    reconnect_delay: float = 1.0
    max_reconnect_delay: float = 30.0
    max_reconnect_attempts: int = 10

class ActionSettings(BaseModel):
    default_timeout: Optional[float] = None
    notify_failures: bool = True
    failure_message: str = "Action '{action}' failed: {error}"

class RuntimeConfig(BaseSettings):
    """
    All runtime settings. Environment variables named
    PAGEKIT_<SECTION>__<KEY> take precedence over values passed in.
    """
    model_config = SettingsConfigDict(
        env_prefix="PAGEKIT_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    general: GeneralSettings = Field(default_factory=GeneralSettings)
    http: HttpSettings = Field(default_factory=HttpSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    websocket: WebSocketSettings = Field(default_factory=WebSocketSettings)
    actions: ActionSettings = Field(default_factory=ActionSettings)

    @classmethod
    def settings_customise_sources(cls, settings_cls, init_settings, env_settings, dotenv_settings, file_secret_settings):
        return env_settings, init_settings

# --- Manager ---
class ConfigManager:
    """
    Holds the RuntimeConfig of one PageRuntime.

    Sources, lowest precedence first: model defaults, the JSON or TOML file
    at `filepath`, then environment variables named
    `<env_prefix><SECTION>__<KEY>` (e.g. PAGEKIT_HTTP__BASE_URL). JSON files
    are written back on update(); TOML files are read-only. Without a
    filepath everything stays in memory.
    """
    def __init__(self, filepath: Optional[str] = None, data: Optional[RuntimeConfig] = None, env_prefix: Optional[str] = "PAGEKIT_"):
        self.filepath = filepath
        self.env_prefix = env_prefix
        self.on_changed = Signal("ConfigChanged")
        if data is not None:
            self._data = data
        elif env_prefix:
            self._data = RuntimeConfig(_env_prefix=env_prefix, **self._read_file())
        else:
            self._data = RuntimeConfig.model_validate(self._read_file())

    @property
    def data(self) -> RuntimeConfig:
        return self._data

    def get(self, section: str, key: str) -> Any:
        return getattr(self._section(section), key)

    def update(self, section: str, key: str, value: Any):
        """
        Change one setting, then persist and emit on_changed(section, key, value).

        Raises:
            ValueError: Unknown section or key
            pydantic.ValidationError: The value does not fit the setting
        """
        current = self._section(section)
        if key not in type(current).model_fields:
            raise ValueError(f"Unknown setting '{section}.{key}'")
        replacement = type(current).model_validate({**current.model_dump(), key: value})
        setattr(self._data, section, replacement)
        self._save()
        self.on_changed.emit(section, key, getattr(replacement, key))

    def _section(self, section: str) -> BaseModel:
        if section not in RuntimeConfig.model_fields:
            raise ValueError(f"Unknown config section '{section}'")
        return getattr(self._data, section)

    def _read_file(self) -> Dict[str, Any]:
        if not self.filepath:
            return {}
        if not os.path.isfile(self.filepath):
            logger.info(f"No config at {self.filepath}, using defaults")
            return {}
        try:
            if self.filepath.endswith(".toml"):
                with open(self.filepath, "rb") as f:
                    return tomllib.load(f)
            with open(self.filepath, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to read config {self.filepath}: {e}")
            return {}

    def _save(self):
        if not self.filepath or self.filepath.endswith(".toml"):
            return
        try:
            directory = os.path.dirname(self.filepath)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(self.filepath, "w", encoding="utf-8") as f:
                json.dump(self._data.model_dump(), f, indent=4)
        except OSError as e:
            logger.error(f"Failed to save config {self.filepath}: {e}")

