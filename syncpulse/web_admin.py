from __future__ import annotations

import os
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from syncpulse.auth_service import AuthService
from syncpulse.config_manager import ConfigManager
from syncpulse.log import configure_logging
from syncpulse.metrics import SyncMetrics
from syncpulse.models import HealthStatus, parse_iso_datetime, serialize_datetime
from syncpulse.scheduler import SyncScheduler
from syncpulse.state_store import StateStore
from syncpulse.sync_client import HttpSyncService


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class CredentialRequest(BaseModel):
    token: str = Field(min_length=1, max_length=4096)
    expires_at: str | None = None


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.metrics = SyncMetrics()
        self.auth_service = AuthService(self.state_store)
        self.sync_service = HttpSyncService(self.config_manager, self.auth_service)
        config = self.config_manager.load()
        self.scheduler = SyncScheduler(
            self.config_manager,
            self.state_store,
            self.sync_service,
            self.auth_service,
            self.metrics,
            step_seconds=config.app.step_seconds,
        )


def _sanitize_config_payload(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    sanitized = dict(payload)
    current_api_key = str(current.get("source", {}).get("api_key", ""))

    source = sanitized.get("source")
    if isinstance(source, dict):
        source = dict(source)
        api_key = source.get("api_key")
        if api_key is not None:
            api_key_text = str(api_key).strip()
            if api_key_text in {"", "***"}:
                if current_api_key:
                    source.pop("api_key", None)
                else:
                    source["api_key"] = ""
        if source:
            sanitized["source"] = source
        else:
            sanitized.pop("source", None)

    return sanitized


def _epoch_to_iso(value: float) -> str | None:
    if value <= 0:
        return None
    return serialize_datetime(datetime.fromtimestamp(value, tz=timezone.utc))


def create_app() -> FastAPI:
    config_path = os.getenv("SYNCPULSE_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("SYNCPULSE_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="syncpulse", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        observability = app.state.context.config_manager.load().observability
        configure_logging(observability.log_level, observability.json_logs)
        app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/health")
    def health() -> JSONResponse:
        status = app.state.context.metrics.health
        code = 200 if status is HealthStatus.HEALTHY else 503
        return JSONResponse(status_code=code, content={"status": status.label})

    @app.get("/api/status")
    def status() -> dict[str, Any]:
        scheduler = app.state.context.scheduler
        record = app.state.context.state_store.get_sync_status()
        loop_state = scheduler.current_state.value if scheduler.current_state else None
        return {
            "status": record.to_dict(),
            "loop_state": loop_state,
            "polling_enabled": scheduler.state.enabled,
            "polling_interval_seconds": scheduler.state.interval_seconds,
            "health": app.state.context.metrics.health.label,
            "next_sync_time": _epoch_to_iso(app.state.context.metrics.next_sync_time),
        }

    @app.get("/api/sync/runs")
    def sync_runs(limit: int = 20) -> dict[str, Any]:
        return {"runs": app.state.context.state_store.recent_sync_runs(limit=limit)}

    @app.post("/api/sync/trigger")
    def trigger_sync() -> dict[str, str]:
        app.state.context.scheduler.trigger_manual()
        return {"message": "sync triggered"}

    @app.post("/api/source/test")
    def test_source_connectivity() -> dict[str, Any]:
        ok, message = app.state.context.sync_service.test_connectivity()
        return {"ok": ok, "message": message}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        if not isinstance(request.payload, dict):
            raise HTTPException(status_code=400, detail="payload must be an object")
        current = app.state.context.config_manager.load().to_dict()
        sanitized_payload = _sanitize_config_payload(request.payload, current)
        try:
            updated = app.state.context.config_manager.update(sanitized_payload)
        except (TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {
            "message": "config updated",
            "config": app.state.context.config_manager.masked(),
            "snapshot": asdict(updated.snapshot()),
        }

    @app.post("/api/auth/credential")
    def store_credential(request: CredentialRequest) -> dict[str, Any]:
        try:
            expires_at = parse_iso_datetime(request.expires_at)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Invalid expires_at datetime") from exc
        try:
            app.state.context.auth_service.store_credential(request.token, expires_at)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {
            "message": "credential stored",
            "valid": app.state.context.auth_service.has_valid_credential(),
        }

    @app.delete("/api/auth/credential")
    def clear_credential() -> dict[str, Any]:
        app.state.context.auth_service.clear_credential()
        return {"message": "credential cleared", "valid": False}

    @app.get("/api/auth/credential")
    def credential_state() -> dict[str, bool]:
        return {"valid": app.state.context.auth_service.has_valid_credential()}

    @app.get("/metrics", response_class=PlainTextResponse)
    def metrics() -> PlainTextResponse:
        return PlainTextResponse(
            app.state.context.metrics.render_prometheus(),
            media_type="text/plain; version=0.0.4; charset=utf-8",
        )

    return app
