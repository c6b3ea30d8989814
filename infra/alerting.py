"""Alerting helpers for pager/webhook notifications."""

from __future__ import annotations

import json
import logging
import os
import socket
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

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


_LOG_LEVELS = {
    AlertSeverity.INFO: logging.INFO,
    AlertSeverity.WARNING: logging.WARNING,
    AlertSeverity.CRITICAL: logging.ERROR,
}


@dataclass
class AlertConfig:
    enabled: bool
    webhook_url: Optional[str]
    min_severity: AlertSeverity
    dry_run: bool
    timeout: float = 5.0
    rate_limit_seconds: float = 300.0  # One delivery per alert type per window
    escalation_seconds: float = 900.0  # Escalate a type still firing after 15m
    escalation_webhook_url: Optional[str] = None
    escalation_severity_boost: int = 1
    source: str = "hedgekeeper"


@dataclass
class AlertRecord:
    """Lifecycle of one alert type."""
    alert_type: str
    severity: AlertSeverity
    message: str
    first_seen: float
    last_sent: Optional[float] = None
    count: int = 1
    escalated: bool = False
    resolved: bool = False


class AlertService:
    """
    Send notifications for operational events.

    Features:
    - Every alert is logged, delivered or not
    - Rate limiting: one delivery per alert type within rate_limit_seconds
    - Escalation: an unresolved type still firing after escalation_seconds is
      delivered once more with boosted severity
    - resolve(alert_type) ends the lifecycle so the next occurrence is fresh
    """

    def __init__(self, config: AlertConfig, clock: Callable[[], float] = time.monotonic) -> None:
        self._config = config
        self._clock = clock
        self._enabled = bool(config.enabled and (config.webhook_url or config.dry_run))
        if config.enabled and not self._enabled:
            logger.warning("Alerting enabled but no webhook URL set; alerts will only be logged")
        self._history: Dict[str, AlertRecord] = {}

    @classmethod
    def from_config(cls, raw_config: Optional[Dict[str, Any]], dry_run: bool = False) -> "AlertService":
        raw_config = raw_config or {}

        webhook_url = raw_config.get("webhook_url")
        if webhook_url and "${" in webhook_url:
            webhook_url = os.path.expandvars(webhook_url)
            if "${" in webhook_url:
                webhook_url = None

        if not webhook_url:
            env_key = raw_config.get("webhook_env", "ALERT_WEBHOOK_URL")
            webhook_url = os.getenv(env_key, "")

        escalation_webhook_url = raw_config.get("escalation_webhook_url")
        if escalation_webhook_url and "${" in escalation_webhook_url:
            escalation_webhook_url = os.path.expandvars(escalation_webhook_url)

        config = AlertConfig(
            enabled=bool(raw_config.get("enabled", True)),
            webhook_url=webhook_url or None,
            min_severity=AlertSeverity.from_string(
                raw_config.get("min_severity", "info"),
                default=AlertSeverity.INFO,
            ),
            dry_run=bool(raw_config.get("dry_run", dry_run)),
            timeout=float(raw_config.get("timeout_seconds", 5.0)),
            rate_limit_seconds=float(raw_config.get("rate_limit_seconds", 300.0)),
            escalation_seconds=float(raw_config.get("escalation_seconds", 900.0)),
            escalation_webhook_url=escalation_webhook_url or None,
            escalation_severity_boost=int(raw_config.get("escalation_severity_boost", 1)),
            source=str(raw_config.get("source", "hedgekeeper")),
        )
        return cls(config)

    def is_enabled(self) -> bool:
        return self._enabled

    def notify(
        self,
        severity: AlertSeverity,
        alert_type: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Log an alert and deliver it unless rate limited.

        Returns:
            True if the alert was delivered (or printed in dry-run mode)
        """
        logger.log(
            _LOG_LEVELS.get(severity, logging.WARNING),
            "ALERT [%s] %s: %s%s",
            severity.name,
            alert_type,
            message,
            f" | {context}" if context else "",
        )
        if not self._enabled:
            return False
        if severity.value < self._config.min_severity.value:
            return False

        now = self._clock()
        record = self._history.get(alert_type)

        if record is not None and self._should_escalate(record, now):
            return self._escalate(record, severity, message, context, now)

        if record is not None and self._is_rate_limited(record, now):
            record.count += 1
            logger.debug(f"Alert rate limited: {alert_type} ({record.count} occurrences)")
            return False

        if record is None or record.resolved or record.escalated:
            record = AlertRecord(alert_type=alert_type, severity=severity, message=message, first_seen=now)
            self._history[alert_type] = record
        else:
            record.count += 1
            record.message = message

        delivered = self._send_alert(severity, alert_type, message, context, self._config.webhook_url)
        if delivered:
            record.last_sent = now
        return delivered

    def resolve(self, alert_type: str) -> None:
        """
        Mark an alert type as resolved to prevent escalation.

        Call this when the condition that triggered the alert is cleared.
        """
        record = self._history.get(alert_type)
        if record is not None and not record.resolved:
            record.resolved = True
            logger.info(f"Alert resolved: {alert_type}")

    def active_alerts(self) -> Dict[str, int]:
        return {t: r.count for t, r in self._history.items() if not r.resolved}

    # Convenience helpers for the alert types the bot raises
    def bot_started(self, mode: str, context: Optional[Dict[str, Any]] = None) -> bool:
        return self.notify(AlertSeverity.INFO, "BOT_STARTED", f"{self._config.source} started ({mode})", context)

    def bot_stopped(self, reason: str) -> bool:
        return self.notify(
            AlertSeverity.INFO,
            "BOT_STOPPED",
            f"{self._config.source} stopped: {reason}",
            {"reason": reason},
        )

    def _is_rate_limited(self, record: AlertRecord, now: float) -> bool:
        if record.resolved or record.last_sent is None:
            return False
        return now - record.last_sent < self._config.rate_limit_seconds

    def _should_escalate(self, record: AlertRecord, now: float) -> bool:
        if record.escalated or record.resolved or record.last_sent is None:
            return False
        return now - record.first_seen >= self._config.escalation_seconds

    def _escalate(
        self,
        record: AlertRecord,
        severity: AlertSeverity,
        message: str,
        context: Optional[Dict[str, Any]],
        now: float,
    ) -> bool:
        """Deliver once more with boosted severity, bypassing the rate limit."""
        record.escalated = True
        record.count += 1
        unresolved_for = int(now - record.first_seen)
        escalated_severity = self._boost_severity(severity, self._config.escalation_severity_boost)
        escalation_context = {
            **(context or {}),
            "escalated": True,
            "first_seen_seconds_ago": unresolved_for,
            "occurrence_count": record.count,
        }
        logger.warning(f"Escalating alert: {record.alert_type} (unresolved for {unresolved_for}s)")

        webhook_url = self._config.escalation_webhook_url or self._config.webhook_url
        delivered = self._send_alert(
            escalated_severity,
            f"ESCALATED {record.alert_type}",
            f"{message} (unresolved for {unresolved_for}s, {record.count} occurrences)",
            escalation_context,
            webhook_url,
        )
        if delivered:
            record.last_sent = now
        return delivered

    def _boost_severity(self, severity: AlertSeverity, boost: int) -> AlertSeverity:
        levels = [AlertSeverity.INFO, AlertSeverity.WARNING, AlertSeverity.CRITICAL]
        try:
            current_index = levels.index(severity)
        except ValueError:
            return severity
        return levels[min(current_index + boost, len(levels) - 1)]

    def _send_alert(
        self,
        severity: AlertSeverity,
        alert_type: str,
        message: str,
        context: Optional[Dict[str, Any]],
        webhook_url: Optional[str],
    ) -> bool:
        payload = self._build_payload(severity, alert_type, message, context, self._config.source)

        if self._config.dry_run:
            logger.info("[ALERT:%s] %s", severity.name, payload["text"])
            return True

        if not webhook_url:
            logger.warning(f"No webhook URL for alert: {alert_type}")
            return False

        data = json.dumps(payload).encode("utf-8")
        request = urllib.request.Request(
            webhook_url,
            data=data,
            headers={"Content-Type": "application/json"},
        )

        try:
            with urllib.request.urlopen(request, timeout=self._config.timeout) as response:
                if response.status >= 400:
                    logger.error("Alert webhook returned HTTP %s for %s", response.status, alert_type)
                    return False
        except (urllib.error.URLError, socket.timeout, OSError) as exc:
            logger.error("Failed to deliver alert '%s': %s", alert_type, exc)
            return False
        return True

    @staticmethod
    def _build_payload(
        severity: AlertSeverity,
        alert_type: str,
        message: str,
        context: Optional[Dict[str, Any]],
        source: str,
    ) -> Dict[str, Any]:
        line_items = [f"[{severity.name}] {source} {alert_type}", message]
        if context:
            try:
                context_json = json.dumps(context, sort_keys=True, default=str)
            except TypeError:
                context_json = str(context)
            line_items.append(f"context={context_json}")
        return {"text": " | ".join(filter(None, line_items))}


__all__ = ["AlertConfig", "AlertService", "AlertSeverity"]
