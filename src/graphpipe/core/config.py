"""Configuration loading utilities."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

CONFIG_DIR = Path(os.environ.get("GRAPHPIPE_CONFIG_DIR", Path.home() / ".config" / "graphpipe"))
CONFIG_FILE = CONFIG_DIR / "config.json"
CACHE_DB = CONFIG_DIR / "cache.db"

DEFAULT_BASE_URL = "https://graph.microsoft.com/beta"


@dataclass(slots=True)
class GraphCredentials:
    """Holds the tenant identity and the bearer token handed to the pipeline."""

    tenant_id: str = ""
    client_id: str = ""
    access_token: str = ""


@dataclass(slots=True)
class AppConfig:
    """Top-level application configuration."""

    creds: GraphCredentials = field(default_factory=GraphCredentials)
    base_url: str = DEFAULT_BASE_URL
    max_retries: int = 3
    connect_timeout: float = 30.0
    total_timeout: float = 60.0
    admission_wait: float = 5.0
    inter_chunk_delay: float = 1.0
    log_level: str = "INFO"
    log_file: Optional[str] = None
    cache_path: Optional[str] = None
    ttl_overrides: Dict[str, float] = field(default_factory=dict)

    @classmethod
    def load(cls, override: Optional[Dict[str, Any]] = None) -> "AppConfig":
        """Load config from disk/.env, applying overrides."""

        _inject_dotenv()

        data: Dict[str, Any] = {}
        if CONFIG_FILE.exists():
            with CONFIG_FILE.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        if override:
            data.update(override)

        defaults = _config_defaults()

        creds_data = data.get("creds", {})
        env_creds = _credentials_from_environment()
        creds_payload = {**creds_data, **env_creds}
        config = cls(
            creds=GraphCredentials(**creds_payload) if creds_payload else GraphCredentials(),
            base_url=data.get("base_url", defaults["base_url"]),
            max_retries=int(data.get("max_retries", defaults["max_retries"])),
            connect_timeout=float(data.get("connect_timeout", defaults["connect_timeout"])),
            total_timeout=float(data.get("total_timeout", defaults["total_timeout"])),
            admission_wait=float(data.get("admission_wait", defaults["admission_wait"])),
            inter_chunk_delay=float(data.get("inter_chunk_delay", defaults["inter_chunk_delay"])),
            log_level=os.environ.get("GRAPHPIPE_LOG_LEVEL") or data.get("log_level", defaults["log_level"]),
            log_file=data.get("log_file", defaults["log_file"]),
            cache_path=data.get("cache_path", defaults["cache_path"]),
            ttl_overrides={key: float(value) for key, value in (data.get("ttl_overrides") or {}).items()},
        )
        return config

    def save(self) -> None:
        """Persist configuration to disk. The access token is never written."""

        CONFIG_DIR.mkdir(parents=True, exist_ok=True)
        creds = _filter_empty(_asdict(self.creds))
        creds.pop("access_token", None)
        payload = {
            "creds": creds,
            "base_url": self.base_url,
            "max_retries": self.max_retries,
            "connect_timeout": self.connect_timeout,
            "total_timeout": self.total_timeout,
            "admission_wait": self.admission_wait,
            "inter_chunk_delay": self.inter_chunk_delay,
            "log_level": self.log_level,
            "log_file": self.log_file,
            "cache_path": self.cache_path,
            "ttl_overrides": dict(self.ttl_overrides),
        }
        with CONFIG_FILE.open("w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2)

    @property
    def cache_db(self) -> Path:
        return Path(self.cache_path) if self.cache_path else CACHE_DB


def _config_defaults() -> Dict[str, Any]:
    template = AppConfig()
    return _asdict(template)


def _dotenv_path() -> Path:
    return Path(os.environ.get("GRAPHPIPE_ENV_FILE", Path.cwd() / ".env"))


def _asdict(instance: Any) -> Dict[str, Any]:
    return {field.name: getattr(instance, field.name) for field in fields(instance)}


def _credentials_from_environment() -> Dict[str, str]:
    creds = load_from_env()
    return _filter_empty(_asdict(creds))


def _filter_empty(mapping: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in mapping.items() if value}


def _inject_dotenv() -> None:
    dotenv_file = _dotenv_path()
    if not dotenv_file.exists():
        return
    with dotenv_file.open("r", encoding="utf-8") as handle:
        for line in handle:
            stripped = line.strip()
            if not stripped or stripped.startswith("#"):
                continue
            if "=" not in stripped:
                continue
            key, _, raw_value = stripped.partition("=")
            key = key.strip()
            value = raw_value.strip()
            if (value.startswith("\"") and value.endswith("\"")) or (value.startswith("'") and value.endswith("'")):
                value = value[1:-1]
            value = value.strip()
            os.environ.setdefault(key, value)


def load_from_env() -> GraphCredentials:
    """Create credentials from environment variables or .env file."""

    env = os.environ
    return GraphCredentials(
        tenant_id=env.get("GRAPHPIPE_TENANT_ID") or env.get("AZURE_TENANT_ID", ""),
        client_id=env.get("GRAPHPIPE_CLIENT_ID") or env.get("AZURE_CLIENT_ID", ""),
        access_token=env.get("GRAPHPIPE_ACCESS_TOKEN") or env.get("GRAPH_ACCESS_TOKEN", ""),
    )
