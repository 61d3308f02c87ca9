"""
Configuration loader for the dispatch service.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class QueueConfig:
    backend: str = "memory"             # "memory" for dev, "redis" for production
    redis_url: str = "redis://localhost:6379"
    stream: str = "dispatch"
    consumer_group: str = "dispatch-workers"
    max_retries: int = 3                # redeliveries before dead-lettering
    retry_delay_seconds: float = 0
    batch_size: int = 10
    consumer_concurrency: int = 10      # max concurrent dispatches per batch


@dataclass
class WebhookConfig:
    timeout_seconds: float = 30.0


@dataclass
class Settings:
    app_name: str = "Dispatch"
    debug: bool = False
    run_consumer: bool = True
    queue: QueueConfig = field(default_factory=QueueConfig)
    webhook: WebhookConfig = field(default_factory=WebhookConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file. Missing file → defaults."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "DISPATCH_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.run_consumer = raw.get("run_consumer", settings.run_consumer)

        if "queue" in raw:
            q = raw["queue"]
            defaults = QueueConfig()
            settings.queue = QueueConfig(
                backend=q.get("backend", defaults.backend),
                redis_url=q.get("redis_url", defaults.redis_url),
                stream=q.get("stream", defaults.stream),
                consumer_group=q.get("consumer_group", defaults.consumer_group),
                max_retries=int(q.get("max_retries", defaults.max_retries)),
                retry_delay_seconds=float(q.get("retry_delay_seconds", defaults.retry_delay_seconds)),
                batch_size=int(q.get("batch_size", defaults.batch_size)),
                consumer_concurrency=int(q.get("consumer_concurrency", defaults.consumer_concurrency)),
            )

        if "webhook" in raw:
            wh = raw["webhook"]
            settings.webhook = WebhookConfig(
                timeout_seconds=float(wh.get("timeout_seconds", 30.0)),
            )

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
