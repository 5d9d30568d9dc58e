# appblock/settings.py
"""
Settings for the appblock service.

- Pydantic v2 Settings with env prefix APPBLOCK_ and nested delimiter '__'
- Controller address/credentials, rule store location, expiry retry policy
- Application catalog: built-in defaults, env overrides, optional YAML file
- Logging: text or JSON (python-json-logger) via dictConfig
- Self-check of the loaded values (verify)
"""

from __future__ import annotations

from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from appblock.catalog import DEFAULT_APP_IDS, AppCatalog


class LogFormat(str, Enum):
    text = "text"
    json = "json"


class ControllerSettings(BaseModel):
    base_url: str = "https://192.168.1.1:8443"
    site: str = "default"
    verify_ssl: bool = False             # controllers ship self-signed certificates
    timeout_seconds: float = 15.0
    retries: int = 2
    username: Optional[str] = None
    password: Optional[SecretStr] = None

    @field_validator("base_url")
    @classmethod
    def _strip_slash(cls, v: str) -> str:
        return v.rstrip("/")


class StoreSettings(BaseModel):
    path: Path = Path("rules.json")


class ExpirySettings(BaseModel):
    grace_seconds: float = 5.0
    retry_initial_seconds: float = 30.0
    retry_max_seconds: float = 900.0


class LoggingSettings(BaseModel):
    level: str = "INFO"                  # DEBUG, INFO, WARNING, ERROR, CRITICAL
    format: LogFormat = LogFormat.text   # text | json
    uvicorn_access: bool = True


class ApiSettings(BaseModel):
    host: str = "0.0.0.0"
    port: int = 3000
    auto_login: bool = True


class AppSettings(BaseSettings):
    """
    Service configuration.
    Overridden by env variables with prefix APPBLOCK_ and nested delimiter '__'.
    Examples:
        APPBLOCK_CONTROLLER__BASE_URL=https://10.0.0.1
        APPBLOCK_CONTROLLER__PASSWORD=supersecret
        APPBLOCK_STORE__PATH=/var/lib/appblock/rules.json
        APPBLOCK_LOGGING__FORMAT=json
    """
    model_config = SettingsConfigDict(
        env_prefix="APPBLOCK_",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    app_name: str = "appblock"
    version: str = "0.3.0"

    controller: ControllerSettings = Field(default_factory=ControllerSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    expiry: ExpirySettings = Field(default_factory=ExpirySettings)
    maintenance_interval_seconds: float = 0.0   # 0 disables the periodic sync+cleanup
    apps: Dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_APP_IDS))
    apps_file: Optional[Path] = None
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    api: ApiSettings = Field(default_factory=ApiSettings)

    @field_validator("apps", mode="before")
    @classmethod
    def _coerce_ids(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return {str(k): str(val) for k, val in v.items()}
        return v

    def verify(self) -> None:
        errors: List[str] = []

        if not self.controller.base_url.startswith(("http://", "https://")):
            errors.append(f"controller.base_url must be an http(s) URL: {self.controller.base_url}")
        if self.controller.timeout_seconds <= 0:
            errors.append("controller.timeout_seconds must be > 0")
        if self.controller.retries < 0:
            errors.append("controller.retries must be >= 0")
        if bool(self.controller.username) != (self.controller.password is not None):
            errors.append("controller.username and controller.password must be set together")
        if self.expiry.grace_seconds < 0:
            errors.append("expiry.grace_seconds must be >= 0")
        if not 0 < self.expiry.retry_initial_seconds <= self.expiry.retry_max_seconds:
            errors.append("expiry retry delays must satisfy 0 < retry_initial_seconds <= retry_max_seconds")
        if self.maintenance_interval_seconds < 0:
            errors.append("maintenance_interval_seconds must be >= 0")
        if not self.apps:
            errors.append("apps mapping must not be empty")
        if self.apps_file is not None and not self.apps_file.exists():
            errors.append(f"apps_file not found: {self.apps_file}")
        if not 0 < self.api.port < 65536:
            errors.append(f"api.port out of range: {self.api.port}")

        if errors:
            raise RuntimeError("Invalid configuration:\n - " + "\n - ".join(errors))

    def build_catalog(self) -> AppCatalog:
        if self.apps_file is not None:
            return AppCatalog.from_yaml(self.apps_file, base=self.apps)
        return AppCatalog(self.apps)

    # dictConfig for logging
    def logging_dict_config(self) -> Dict[str, Any]:
        fmt_text = "%(asctime)s %(levelname)s %(name)s [%(operation)s %(rule_id)s] %(message)s"
        fmt_access = '%(asctime)s %(levelname)s %(client_addr)s - "%(request_line)s" %(status_code)s'
        use_json = self.logging.format == LogFormat.json

        formatters: Dict[str, Any] = {
            "default": {"format": fmt_text},
            "access": {"format": fmt_access},
        }
        if use_json:
            formatters["default"] = {
                "()": "pythonjsonlogger.json.JsonFormatter",
                "fmt": "%(asctime)s %(levelname)s %(name)s %(operation)s %(rule_id)s %(message)s",
            }
            formatters["access"] = {
                "()": "pythonjsonlogger.json.JsonFormatter",
                "fmt": "%(asctime)s %(levelname)s access %(message)s",
            }

        filters: Dict[str, Any] = {
            "context": {"()": "appblock.logging_setup.ContextFilter"},
            "redact": {"()": "appblock.logging_setup.RedactionFilter"},
        }
        handlers: Dict[str, Any] = {
            "default": {
                "class": "logging.StreamHandler",
                "level": self.logging.level,
                "stream": "ext://sys.stdout",
                "formatter": "default",
                "filters": ["context", "redact"],
            },
            "access": {
                "class": "logging.StreamHandler",
                "level": self.logging.level,
                "stream": "ext://sys.stdout",
                "formatter": "access",
            },
        }

        return {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": filters,
            "formatters": formatters,
            "handlers": handlers,
            "root": {"level": self.logging.level, "handlers": ["default"]},
            "loggers": {
                "appblock": {"level": self.logging.level, "propagate": True},
                "httpx": {"level": "WARNING", "propagate": True},
                "uvicorn.error": {"level": self.logging.level, "handlers": ["default"], "propagate": False},
                "uvicorn.access": {
                    "level": self.logging.level,
                    "handlers": (["access"] if self.logging.uvicorn_access else []),
                    "propagate": False,
                },
            },
        }

    def redacted_dict(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json")
        if self.controller.password is not None:
            data["controller"]["password"] = "***"
        return data


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    """Load settings once (env + .env) and check them."""
    settings = AppSettings()
    settings.verify()
    return settings
