from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import os
import sys


@dataclass(frozen=True)
class AppPaths:
    base_dir: Path
    logs_dir: Path
    policies_path: Path
    dan_buffer_path: Path


def _windows_appdata() -> Path:
    return Path(os.environ.get("APPDATA", str(Path.home() / "AppData" / "Roaming")))


def _mac_app_support() -> Path:
    return Path.home() / "Library" / "Application Support"


def get_app_paths(app_name: str = "ShopLedger") -> AppPaths:
    if sys.platform.startswith("win"):
        base = _windows_appdata() / app_name
    elif sys.platform == "darwin":
        base = _mac_app_support() / app_name
    else:
        base = Path.home() / f".{app_name.lower()}"

    logs = base / "logs"

    base.mkdir(parents=True, exist_ok=True)
    logs.mkdir(parents=True, exist_ok=True)

    return AppPaths(
        base_dir=base,
        logs_dir=logs,
        policies_path=base / "policies.json",
        dan_buffer_path=base / "dan_buffer.json",
    )


def _env_flag(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).strip().lower() in {"1", "true", "yes"}


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    return float(raw) if raw else default


STORE_MODE_UNAVAILABLE = "unavailable"
STORE_MODE_MEMORY = "memory"
STORE_MODE_HTTP = "http"


@dataclass(frozen=True)
class Settings:
    store_url: str = ""
    store_api_key: str = ""
    store_timeout: float = 30.0
    vector_size: int = 768
    vector_distance: str = "Cosine"
    embedding_url: str = ""
    embedding_api_key: str = ""
    embedding_model: str = "text-embedding-004"
    enable_dan: bool = False
    dan_salt: str = "dan-dev-salt"
    dan_feed_url: str = ""
    dan_feed_key: str = ""
    retail_markup: float = 1.4
    scroll_retry_delay: float = 1.0

    @property
    def store_mode(self) -> str:
        url = self.store_url.strip()
        if not url:
            return STORE_MODE_UNAVAILABLE
        if url.lower() == STORE_MODE_MEMORY:
            return STORE_MODE_MEMORY
        return STORE_MODE_HTTP

    @classmethod
    def from_env(cls) -> "Settings":
        url = os.environ.get("SHOPLEDGER_STORE_URL", "").strip()
        while url.endswith("/"):
            url = url[:-1]
        return cls(
            store_url=url,
            store_api_key=os.environ.get("SHOPLEDGER_STORE_API_KEY", ""),
            store_timeout=_env_float("SHOPLEDGER_STORE_TIMEOUT", 30.0),
            vector_size=int(os.environ.get("SHOPLEDGER_VECTOR_SIZE", "768")),
            embedding_url=os.environ.get("SHOPLEDGER_EMBEDDING_URL", "").strip(),
            embedding_api_key=os.environ.get("SHOPLEDGER_EMBEDDING_API_KEY", ""),
            embedding_model=os.environ.get("SHOPLEDGER_EMBEDDING_MODEL", "text-embedding-004"),
            enable_dan=_env_flag("SHOPLEDGER_ENABLE_DAN"),
            dan_salt=os.environ.get("SHOPLEDGER_DAN_SALT", "dan-dev-salt"),
            dan_feed_url=os.environ.get("SHOPLEDGER_DAN_FEED_URL", "").strip(),
            dan_feed_key=os.environ.get("SHOPLEDGER_DAN_FEED_KEY", ""),
            retail_markup=_env_float("SHOPLEDGER_RETAIL_MARKUP", 1.4),
        )
