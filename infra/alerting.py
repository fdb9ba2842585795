"""Alerting helpers for operator webhook notifications."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import socket
import threading
import time
import urllib.error
import urllib.request
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)


class AlertSeverity(Enum):
    INFO = 10
    WARNING = 20
    CRITICAL = 30

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.name.lower()

    @classmethod
    def from_string(cls, value: str, default: Optional["AlertSeverity"] = None) -> "AlertSeverity":
        if not value:
            return default or cls.WARNING
        normalized = value.strip().lower()
        for member in cls:
            if member.name.lower() == normalized:
                return member
        return default or cls.WARNING


@dataclass
class AlertConfig:
    enabled: bool
    webhook_url: Optional[str]
    min_severity: AlertSeverity
    dry_run: bool
    timeout: float = 5.0
    dedupe_seconds: float = 60.0  # Dedupe identical alerts within 60s
    history_size: int = 200


@dataclass
class AlertRecord:
    """One delivered (or dry-run logged) alert."""
    severity: AlertSeverity
    title: str
    message: str
    context: Dict[str, Any] = field(default_factory=dict)
    sent_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class AlertService:
    """
    Send notifications for exit failures, breaker trips and loss streaks.

    Features:
    - Severity floor: alerts below min_severity are dropped
    - Deduplication: identical alerts within dedupe_seconds are suppressed
    - History: bounded list of sent alerts for the health endpoint and tests
    """

    def __init__(self, config: AlertConfig) -> None:
        self._config = config
        self._enabled = bool(config.enabled and (config.webhook_url or config.dry_run))
        if config.enabled and not self._enabled:
            logger.warning("Alerting enabled but no webhook URL set; disabling alerts")

        self._first_seen: Dict[str, float] = {}
        self._history: Deque[AlertRecord] = deque(maxlen=config.history_size)
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, alerts_config) -> "AlertService":
        """Build from the validated ``alerts`` section of the policy file."""
        webhook_url = alerts_config.webhook_url
        if webhook_url and "${" in webhook_url:
            webhook_url = os.path.expandvars(webhook_url)
        if not webhook_url:
            webhook_url = os.getenv(alerts_config.webhook_env, "")

        config = AlertConfig(
            enabled=alerts_config.enabled,
            webhook_url=webhook_url or None,
            min_severity=AlertSeverity.from_string(alerts_config.min_severity, default=AlertSeverity.WARNING),
            dry_run=alerts_config.dry_run,
            timeout=alerts_config.timeout_seconds,
            dedupe_seconds=alerts_config.dedupe_seconds,
            history_size=alerts_config.history_size,
        )
        return cls(config)

    def is_enabled(self) -> bool:
        return self._enabled

    def notify(
        self,
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Send alert notification unless filtered or deduped.

        Returns True when the alert went out (or was logged in dry-run).
        """
        if not self._enabled:
            return False
        if severity.value < self._config.min_severity.value:
            return False

        fingerprint = self._generate_fingerprint(severity, title, message)
        with self._lock:
            now = time.monotonic()
            first_seen = self._first_seen.get(fingerprint)
            if first_seen is not None and now - first_seen <= self._config.dedupe_seconds:
                logger.debug(f"Alert deduped: {title} (fingerprint={fingerprint[:8]}...)")
                return False
            self._first_seen[fingerprint] = now
            self._cleanup_old_fingerprints(now)
            self._history.append(AlertRecord(severity, title, message, dict(context or {})))

        self._send_alert(severity, title, message, context)
        return True

    def recent(self, limit: Optional[int] = None) -> List[AlertRecord]:
        """Most recent alerts, oldest first."""
        with self._lock:
            records = list(self._history)
        if limit is not None:
            records = records[-limit:]
        return records

    @staticmethod
    def _generate_fingerprint(severity: AlertSeverity, title: str, message: str) -> str:
        content = f"{severity.name}|{title}|{message}"
        return hashlib.sha256(content.encode('utf-8')).hexdigest()

    def _cleanup_old_fingerprints(self, now: float) -> None:
        stale = [fp for fp, seen in self._first_seen.items() if now - seen > self._config.dedupe_seconds]
        for fp in stale:
            del self._first_seen[fp]

    def _send_alert(
        self,
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]],
    ) -> None:
        """Send alert to webhook."""
        if self._config.dry_run:
            logger.info("[ALERT:%s] %s - %s | %s", severity.name, title, message, context or {})
            return

        webhook_url = self._config.webhook_url
        payload = self._build_payload(severity, title, message, context)
        data = json.dumps(payload).encode("utf-8")
        request = urllib.request.Request(
            webhook_url,
            data=data,
            headers={"Content-Type": "application/json"},
        )

        try:
            with urllib.request.urlopen(request, timeout=self._config.timeout) as response:
                if response.status >= 400:
                    body = response.read().decode("utf-8", errors="ignore")
                    raise urllib.error.HTTPError(
                        webhook_url,
                        response.status,
                        body,
                        response.headers,
                        None,
                    )
        except (urllib.error.URLError, urllib.error.HTTPError, socket.timeout) as exc:
            logger.error("Failed to deliver alert '%s': %s", title, exc)

    @staticmethod
    def _build_payload(
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        line_items = [f"[{severity.name}] {title}", message]
        if context:
            try:
                context_json = json.dumps(context, sort_keys=True)
            except TypeError:
                context_json = str(context)
            line_items.append(f"context={context_json}")
        return {"text": " | ".join(filter(None, line_items))}


__all__ = ["AlertConfig", "AlertRecord", "AlertService", "AlertSeverity"]
