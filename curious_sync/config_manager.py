from __future__ import annotations

import copy
import errno
import logging
import os
import threading
from pathlib import Path
from typing import Any

import yaml

from curious_sync.models import PROVIDERS, AppConfig, default_app_config


logger = logging.getLogger(__name__)

SECRET_FIELDS = ("client_secret", "access_token", "refresh_token", "webhook_token")


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _drop_masked(payload: dict[str, Any]) -> dict[str, Any]:
    # A masked value echoed back by a client must not overwrite the stored secret.
    cleaned: dict[str, Any] = {}
    for key, value in payload.items():
        if isinstance(value, dict):
            cleaned[key] = _drop_masked(value)
        elif value == "***" and key in SECRET_FIELDS:
            continue
        else:
            cleaned[key] = value
    return cleaned


class ConfigManager:
    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        self._ensure_exists()

    def _ensure_exists(self) -> None:
        if self.config_path.exists():
            return
        logger.info("Writing default config to %s", self.config_path)
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        self.save(default_app_config())

    def load(self) -> AppConfig:
        with self._lock:
            with self.config_path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
            return AppConfig.from_dict(data)

    def _dump(self, config_dict: dict[str, Any], path: Path) -> None:
        with path.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(
                config_dict,
                handle,
                sort_keys=False,
                allow_unicode=True,
                default_flow_style=False,
            )

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            config_dict = config.to_dict()
            tmp_path = self.config_path.with_suffix(self.config_path.suffix + ".tmp")
            self._dump(config_dict, tmp_path)
            try:
                tmp_path.replace(self.config_path)
            except OSError as exc:
                # Some bind-mounted single files in containers cannot be atomically replaced.
                if exc.errno != errno.EBUSY:
                    raise
                self._dump(config_dict, self.config_path)
                if tmp_path.exists():
                    tmp_path.unlink()

    def update(self, payload: dict[str, Any]) -> AppConfig:
        with self._lock:
            current = self.load().to_dict()
            merged = _deep_merge(current, _drop_masked(payload))
            config = AppConfig.from_dict(merged)
            self.save(config)
            return config

    def store_tokens(
        self,
        provider: str,
        *,
        access_token: str,
        refresh_token: str,
        expires_at: str,
    ) -> AppConfig:
        """Persist a refreshed OAuth token pair for one provider."""
        logger.debug("Persisting refreshed %s token expiring at %s", provider, expires_at)
        return self.update(
            {
                provider: {
                    "access_token": access_token,
                    "refresh_token": refresh_token,
                    "token_expires_at": expires_at,
                }
            }
        )

    def masked(self) -> dict[str, Any]:
        config = self.load().to_dict()
        for provider in PROVIDERS:
            section = config.get(provider, {})
            for key in SECRET_FIELDS:
                if section.get(key):
                    section[key] = "***"
        return config
