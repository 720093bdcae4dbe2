from __future__ import annotations

import copy
import errno
import logging
import os
import threading
from pathlib import Path
from typing import Any

import yaml

from medsync.models import AppConfig, default_app_config

logger = logging.getLogger(__name__)

MASK = "***"
SECRET_FIELDS = (("remote", "api_key"), ("remote", "access_token"))


def merge_sections(current: dict[str, Any], payload: dict[str, Any]) -> dict[str, Any]:
    """Overlay a partial config payload onto ``current``, one section at a time.

    Only sections that already exist may be updated and each must be a
    mapping; anything else raises ``ValueError``.
    """
    merged = copy.deepcopy(current)
    for section, changes in payload.items():
        if section not in merged:
            raise ValueError(f"unknown config section: {section!r}")
        if not isinstance(changes, dict):
            raise ValueError(f"config section {section!r} must be a mapping")
        target = merged[section]
        for key, value in changes.items():
            if isinstance(value, dict) and isinstance(target.get(key), dict):
                target[key] = {**target[key], **value}
            else:
                target[key] = copy.deepcopy(value)
    return merged


def render_yaml(config: AppConfig) -> str:
    return yaml.safe_dump(
        config.to_dict(),
        sort_keys=False,
        allow_unicode=True,
        default_flow_style=False,
    )


def write_config_file(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(text, encoding="utf-8")
    try:
        tmp_path.replace(path)
    except OSError as exc:
        # Bind-mounted single files in containers cannot be atomically replaced.
        if exc.errno != errno.EBUSY:
            raise
        logger.warning("Atomic replace of %s failed (EBUSY), writing in place", path)
        path.write_text(text, encoding="utf-8")
        tmp_path.unlink(missing_ok=True)


def strip_masked_secrets(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    """Drop secret fields sent back as blank or masked so they keep their stored value."""
    sanitized = copy.deepcopy(payload)
    for section, name in SECRET_FIELDS:
        block = sanitized.get(section)
        if not isinstance(block, dict) or name not in block:
            continue
        value = str(block.get(name) or "").strip()
        if value in {"", MASK}:
            if str(current.get(section, {}).get(name, "")):
                block.pop(name, None)
            else:
                block[name] = ""
        if not block:
            sanitized.pop(section, None)
    return sanitized


class ConfigManager:
    """YAML-backed AppConfig, created with defaults on first use."""

    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        with self._lock:
            if not self.config_path.exists():
                logger.info("Writing default configuration to %s", self.config_path)
                self.save(default_app_config())

    def load(self) -> AppConfig:
        with self._lock:
            data = yaml.safe_load(self.config_path.read_text(encoding="utf-8")) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{self.config_path} does not hold a YAML mapping")
        return AppConfig.from_dict(data)

    def save(self, config: AppConfig) -> None:
        with self._lock:
            write_config_file(self.config_path, render_yaml(config))

    def update(self, payload: dict[str, Any]) -> AppConfig:
        with self._lock:
            merged = merge_sections(self.load().to_dict(), payload)
            config = AppConfig.from_dict(merged)
            self.save(config)
        logger.info("Configuration updated: %s", ", ".join(sorted(payload)) or "no changes")
        return config

    def masked(self) -> dict[str, Any]:
        config = self.load().to_dict()
        for section, name in SECRET_FIELDS:
            if config.get(section, {}).get(name):
                config[section][name] = MASK
        return config
