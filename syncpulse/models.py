from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


DEFAULT_POLLING_INTERVAL_SECONDS = 86400
DEFAULT_STEP_SECONDS = 5


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def _as_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


@dataclass
class AppSection:
    enable_polling: bool = True
    polling_interval_seconds: int = DEFAULT_POLLING_INTERVAL_SECONDS
    step_seconds: int = DEFAULT_STEP_SECONDS

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppSection":
        data = data or {}
        return cls(
            enable_polling=_as_bool(data.get("enable_polling"), True),
            polling_interval_seconds=max(
                1, int(data.get("polling_interval_seconds", DEFAULT_POLLING_INTERVAL_SECONDS))
            ),
            step_seconds=max(1, int(data.get("step_seconds", DEFAULT_STEP_SECONDS))),
        )


@dataclass
class SourceConfig:
    base_url: str = ""
    api_key: str = ""
    num_items_to_sync: int = 5
    timeout_seconds: int = 90

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SourceConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", "")).strip(),
            api_key=str(data.get("api_key", "")).strip(),
            num_items_to_sync=max(1, int(data.get("num_items_to_sync", 5))),
            timeout_seconds=max(1, int(data.get("timeout_seconds", 90))),
        )


@dataclass
class AuthConfig:
    two_step_verification_enabled: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AuthConfig":
        data = data or {}
        return cls(
            two_step_verification_enabled=_as_bool(data.get("two_step_verification_enabled"), False),
        )


@dataclass
class ObservabilityConfig:
    log_level: str = "INFO"
    json_logs: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ObservabilityConfig":
        data = data or {}
        return cls(
            log_level=str(data.get("log_level", "INFO")).strip().upper() or "INFO",
            json_logs=_as_bool(data.get("json_logs"), False),
        )


@dataclass(frozen=True)
class ConfigSnapshot:
    """Immutable view of the settings the scheduler reads on every iteration."""

    polling_enabled: bool = False
    polling_interval_seconds: int = DEFAULT_POLLING_INTERVAL_SECONDS
    num_items_to_sync: int = 5
    two_factor_auth_enabled: bool = False


@dataclass
class AppConfig:
    app: AppSection = field(default_factory=AppSection)
    source: SourceConfig = field(default_factory=SourceConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            app=AppSection.from_dict(data.get("app")),
            source=SourceConfig.from_dict(data.get("source")),
            auth=AuthConfig.from_dict(data.get("auth")),
            observability=ObservabilityConfig.from_dict(data.get("observability")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def snapshot(self) -> ConfigSnapshot:
        return ConfigSnapshot(
            polling_enabled=self.app.enable_polling,
            polling_interval_seconds=self.app.polling_interval_seconds,
            num_items_to_sync=self.source.num_items_to_sync,
            two_factor_auth_enabled=self.auth.two_step_verification_enabled,
        )


def default_app_config() -> AppConfig:
    return AppConfig()


class SyncStatus(str, Enum):
    NOT_RUNNING = "NotRunning"
    RUNNING = "Running"
    UNHEALTHY = "UnHealthy"


class HealthStatus(Enum):
    HEALTHY = 1
    UNHEALTHY = 0

    @property
    def label(self) -> str:
        return "Healthy" if self is HealthStatus.HEALTHY else "UnHealthy"


@dataclass
class SyncStatusRecord:
    sync_status: SyncStatus = SyncStatus.NOT_RUNNING
    next_sync_time: datetime | None = None
    last_sync_time: datetime | None = None
    last_successful_sync_time: datetime | None = None
    last_error_message: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncStatusRecord":
        data = data or {}
        raw_status = str(data.get("sync_status", SyncStatus.NOT_RUNNING.value))
        try:
            status = SyncStatus(raw_status)
        except ValueError:
            status = SyncStatus.NOT_RUNNING
        return cls(
            sync_status=status,
            next_sync_time=parse_iso_datetime(data.get("next_sync_time")),
            last_sync_time=parse_iso_datetime(data.get("last_sync_time")),
            last_successful_sync_time=parse_iso_datetime(data.get("last_successful_sync_time")),
            last_error_message=str(data.get("last_error_message") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "sync_status": self.sync_status.value,
            "next_sync_time": serialize_datetime(self.next_sync_time),
            "last_sync_time": serialize_datetime(self.last_sync_time),
            "last_successful_sync_time": serialize_datetime(self.last_successful_sync_time),
            "last_error_message": self.last_error_message,
        }


@dataclass
class SyncResult:
    success: bool
    errors: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncResult":
        data = data or {}
        raw_errors = data.get("errors") or []
        if isinstance(raw_errors, str):
            raw_errors = [raw_errors]
        return cls(
            success=_as_bool(data.get("success"), False),
            errors=[str(x) for x in raw_errors if str(x).strip()],
        )


class OutcomeKind(str, Enum):
    OK = "ok"
    FAILED = "failed"
    FAULTED = "faulted"


@dataclass
class SyncOutcome:
    kind: OutcomeKind
    detail: str = ""
    duration_seconds: float = 0.0
    started_at: datetime = field(default_factory=utc_now)

    @property
    def succeeded(self) -> bool:
        return self.kind is OutcomeKind.OK
