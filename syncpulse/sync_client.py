from __future__ import annotations

from typing import Any

import requests

from syncpulse.auth_service import AuthService
from syncpulse.config_manager import ConfigManager
from syncpulse.models import SourceConfig, SyncResult


class HttpSyncService:
    """Client for the remote sync engine.

    Settings are re-read on every call so a changed base_url or api_key applies
    to the next attempt without a restart.
    """

    def __init__(self, config_manager: ConfigManager, auth_service: AuthService | None = None) -> None:
        self.config_manager = config_manager
        self.auth_service = auth_service

    def _source_config(self) -> SourceConfig:
        return self.config_manager.load().source

    @staticmethod
    def is_configured(config: SourceConfig) -> bool:
        return bool(config.base_url)

    @staticmethod
    def _endpoint(config: SourceConfig, path: str) -> str:
        return f"{config.base_url.rstrip('/')}/{path.lstrip('/')}"

    def _headers(self, config: SourceConfig) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if config.api_key:
            headers["Authorization"] = f"Bearer {config.api_key}"
        if self.auth_service is not None:
            token = self.auth_service.current_token()
            if token:
                headers["X-Auth-Token"] = token
        return headers

    def sync(self, item_count: int, force_reclassify: bool = False) -> SyncResult:
        config = self._source_config()
        if not self.is_configured(config):
            return SyncResult(success=False, errors=["Sync source base_url is not configured."])
        response = requests.post(
            self._endpoint(config, "sync"),
            headers=self._headers(config),
            json={"num_items": int(item_count), "force_reclassify": bool(force_reclassify)},
            timeout=config.timeout_seconds,
        )
        response.raise_for_status()
        payload: Any = response.json() if response.content else {}
        if not isinstance(payload, dict):
            raise ValueError("Sync response root must be an object.")
        return SyncResult.from_dict(payload)

    def test_connectivity(self) -> tuple[bool, str]:
        config = self._source_config()
        if not self.is_configured(config):
            return False, "Sync source config incomplete: base_url required."
        try:
            response = requests.get(
                self._endpoint(config, "health"),
                headers=self._headers(config),
                timeout=config.timeout_seconds,
            )
            if not response.ok:
                return False, f"HTTP {response.status_code}: {response.text[:300]}"
            return True, "Connected."
        except requests.RequestException as exc:
            return False, f"{type(exc).__name__}: {exc}"
