from __future__ import annotations

from pathlib import Path

from loguru import logger
import requests

from .db import persist_system_event
from .settings import settings


class AlertRouter:
    def __init__(self, webhook_url: str | None = None, event_types_csv: str | None = None) -> None:
        self.webhook_url = (settings.alert_webhook_url if webhook_url is None else webhook_url).strip()
        self.timeout = settings.alert_webhook_timeout_seconds
        csv = settings.alert_event_types_csv if event_types_csv is None else event_types_csv
        self.allowed_event_types = {item.strip() for item in csv.split(",") if item.strip()}

    def should_send(self, event_type: str) -> bool:
        if not self.webhook_url:
            return False
        return event_type in self.allowed_event_types

    def send(self, event_type: str, message: str, metadata: dict) -> bool:
        if not self.should_send(event_type):
            return False

        payload = {
            "event_type": event_type,
            "message": message,
            "metadata": metadata,
        }
        try:
            response = requests.post(self.webhook_url, json=payload, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.warning("Alert webhook failed for {}: {}", event_type, exc)
            return False
        return True


class EventRecorder:
    """Persists system events and forwards the configured ones to the webhook."""

    def __init__(self, router: AlertRouter | None = None, db_path: Path | None = None) -> None:
        self.router = router or AlertRouter()
        self.db_path = db_path

    def record(self, event_type: str, message: str, metadata: dict | None = None) -> None:
        metadata = metadata or {}
        logger.info("[event:{}] {}", event_type, message)
        persist_system_event(event_type, message, metadata, db_path=self.db_path)
        self.router.send(event_type, message, metadata)
