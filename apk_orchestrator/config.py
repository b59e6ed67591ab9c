"""Orchestrator settings loaded from APK_* env vars (and an optional .env)."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- CONFIGURATION ---
BASE_DIR = Path(__file__).resolve().parent.parent
MAKE_SH_PATH = BASE_DIR / "make.sh"
APK_MEDIA_TYPE = "application/vnd.android.package-archive"


def _env_file() -> str:
    override = os.getenv("APK_ENV_FILE")
    if override and override.strip():
        return str(Path(override).expanduser().resolve())
    return str((BASE_DIR / ".env").resolve())


def _default_workers() -> int:
    cpu = os.cpu_count() or 2
    return max(1, min(4, cpu // 2))


class Settings(BaseSettings):
    """Service settings. Every field can be set as ``APK_<FIELD>``."""

    model_config = SettingsConfigDict(
        env_file=_env_file(),
        env_file_encoding="utf-8",
        env_prefix="APK_",
        case_sensitive=False,
        extra="ignore",
        env_ignore_empty=True,
    )

    # ---- Server ------------------------------------------------------------
    host: str = "0.0.0.0"
    port: int = Field(9741, ge=1, le=65535)
    log_level: str = "INFO"

    # ---- Runtime filesystem ------------------------------------------------
    data_dir: Path = Field(default=BASE_DIR / "data")

    # ---- Build record journal ---------------------------------------------
    database_url: str | None = None
    database_echo: bool = False
    database_sqlite_busy_timeout_ms: int = Field(30_000, ge=0)

    # ---- Worker pool -------------------------------------------------------
    workers: int = Field(default_factory=_default_workers, ge=1)
    worker_capabilities: list[str] | None = None
    poll_interval: float = Field(0.5, gt=0)

    # ---- Build policy ------------------------------------------------------
    build_timeout_seconds: float = Field(900.0, gt=0)
    kill_grace_seconds: float = Field(5.0, ge=0)
    max_retries: int = Field(2, ge=0)
    backoff_base_seconds: float = Field(5.0, ge=0)
    backoff_max_seconds: float = Field(300.0, ge=0)
    storage_retries: int = Field(3, ge=0)
    storage_retry_delay_seconds: float = Field(0.5, ge=0)

    # ---- Admission ---------------------------------------------------------
    tenant_quota: int = Field(4, ge=1)
    tenant_quotas: dict[str, int] = Field(default_factory=dict)
    queue_capacity: int = Field(256, ge=1)

    # ---- Bounds ------------------------------------------------------------
    max_upload_bytes: int = Field(200 * 1024 * 1024, ge=1)
    max_unpacked_bytes: int = Field(1024 * 1024 * 1024, ge=1)
    max_archive_members: int = Field(50_000, ge=1)
    diagnostics_max_bytes: int = Field(8 * 1024, ge=256)

    # ---- Toolchain ---------------------------------------------------------
    toolchain_command: list[str] = Field(default_factory=lambda: ["bash", str(MAKE_SH_PATH), "apk"])
    toolchain_output_name: str = "app-{variant}.apk"
    java_home: Path | None = None
    android_home: Path | None = None
    gradle_home: Path | None = None

    # ---- Validators --------------------------------------------------------

    @field_validator("log_level", mode="before")
    @classmethod
    def _v_log_level(cls, v: Any) -> str:
        return ("" if v is None else str(v).strip()).upper() or "INFO"

    @field_validator("tenant_quotas")
    @classmethod
    def _v_tenant_quotas(cls, v: dict[str, int]) -> dict[str, int]:
        for tenant, limit in v.items():
            if int(limit) < 1:
                raise ValueError(f"quota for tenant {tenant!r} must be at least 1")
        return v

    @model_validator(mode="after")
    def _finalize(self) -> "Settings":
        if not self.data_dir.is_absolute():
            self.data_dir = (BASE_DIR / self.data_dir).resolve()
        else:
            self.data_dir = self.data_dir.expanduser().resolve()
        if self.backoff_max_seconds < self.backoff_base_seconds:
            self.backoff_max_seconds = self.backoff_base_seconds
        return self

    @property
    def artifacts_dir(self) -> Path:
        return self.data_dir / "artifacts"

    @property
    def workspaces_dir(self) -> Path:
        return self.data_dir / "workspaces"

    @property
    def sqlalchemy_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"sqlite:///{self.data_dir / 'builds.db'}"

    @property
    def cache_dir(self) -> Path:
        return self.data_dir / "cache"

    def quota_for(self, tenant_id: str) -> int:
        return int(self.tenant_quotas.get(tenant_id, self.tenant_quota))

    def backoff_seconds(self, attempt: int) -> float:
        base = max(0.0, float(self.backoff_base_seconds))
        delay = base * (2 ** max(attempt - 1, 0))
        return min(float(self.backoff_max_seconds), delay)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings(_env_file=_env_file())


__all__ = ["APK_MEDIA_TYPE", "BASE_DIR", "Settings", "get_settings"]
