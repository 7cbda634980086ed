"""Alerting helpers for webhook notifications (Discord-compatible payloads)."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import socket
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from core.models import NetworkEvent, SnipeResult

logger = logging.getLogger(__name__)

COLORS = {
    "INFO": 0x5865F2,
    "WARNING": 0xFAA61A,
    "CRITICAL": 0xED4245,
    "SUCCESS": 0x57F287,
}


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


class AlertService:
    """
    Send notifications for network transitions and snipe outcomes.

    Identical alerts (same severity, title and message) are suppressed for
    dedupe_seconds after their first occurrence.
    """

    def __init__(self, config: AlertConfig, clock: Callable[[], float] = time.monotonic) -> None:
        self._config = config
        self._clock = clock
        self._enabled = bool(config.enabled and (config.webhook_url or config.dry_run))
        if config.enabled and not self._enabled:
            logger.warning("Alerting enabled but no webhook URL set; disabling alerts")

        self._first_seen: Dict[str, float] = {}
        self._sent: List[Dict[str, Any]] = []

    @classmethod
    def from_config(cls, enabled: bool, raw_config: Optional[Dict[str, Any]]) -> "AlertService":
        raw_config = raw_config or {}

        webhook_url = raw_config.get("webhook_url")
        if webhook_url and "${" in webhook_url:
            webhook_url = os.path.expandvars(webhook_url)
            if "${" in webhook_url:
                webhook_url = None

        if not webhook_url:
            env_key = raw_config.get("webhook_env", "ALERT_WEBHOOK_URL")
            webhook_url = os.getenv(env_key, "")

        config = AlertConfig(
            enabled=enabled,
            webhook_url=webhook_url or None,
            min_severity=AlertSeverity.from_string(
                raw_config.get("min_severity", "info"),
                default=AlertSeverity.INFO,
            ),
            dry_run=bool(raw_config.get("dry_run", False)),
            timeout=float(raw_config.get("timeout_seconds", 5.0)),
            dedupe_seconds=float(raw_config.get("dedupe_seconds", 60.0)),
        )
        return cls(config)

    @classmethod
    def disabled(cls) -> "AlertService":
        return cls(AlertConfig(enabled=False, webhook_url=None, min_severity=AlertSeverity.INFO, dry_run=False))

    def is_enabled(self) -> bool:
        return self._enabled

    def sent(self) -> List[Dict[str, Any]]:
        """Payloads delivered (or logged in dry-run) by this instance."""
        return list(self._sent)

    def notify(
        self,
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        color: Optional[int] = None,
    ) -> bool:
        """
        Send alert notification unless disabled, below the severity floor or
        a duplicate inside the dedupe window.

        Returns:
            True if the alert was handed to the webhook (or logged in dry-run)
        """
        if not self._enabled:
            return False
        if severity.value < self._config.min_severity.value:
            return False

        fingerprint = self._generate_fingerprint(severity, title, message)
        now = self._clock()
        first_seen = self._first_seen.get(fingerprint)
        if first_seen is not None and now - first_seen <= self._config.dedupe_seconds:
            logger.debug(f"Alert deduped: {title} (fingerprint={fingerprint[:8]}...)")
            return False
        self._first_seen[fingerprint] = now
        self._cleanup_old_alerts(now)

        payload = self._build_payload(severity, title, message, context, color)
        return self._send(payload, title)

    def _generate_fingerprint(self, severity: AlertSeverity, title: str, message: str) -> str:
        content = f"{severity.name}|{title}|{message}"
        return hashlib.sha256(content.encode("utf-8")).hexdigest()

    def _cleanup_old_alerts(self, now: float) -> None:
        horizon = self._config.dedupe_seconds * 5
        for fp in [fp for fp, ts in self._first_seen.items() if now - ts > horizon]:
            del self._first_seen[fp]

    def _send(self, payload: Dict[str, Any], title: str) -> bool:
        if self._config.dry_run:
            logger.info("[ALERT] %s", payload.get("content"))
            self._sent.append(payload)
            return True

        data = json.dumps(payload).encode("utf-8")
        request = urllib.request.Request(
            self._config.webhook_url,
            data=data,
            headers={"Content-Type": "application/json", "User-Agent": "snipewatch/1.0"},
        )

        try:
            with urllib.request.urlopen(request, timeout=self._config.timeout) as response:
                if response.status >= 400:
                    body = response.read().decode("utf-8", errors="ignore")
                    raise urllib.error.HTTPError(
                        self._config.webhook_url,
                        response.status,
                        body,
                        response.headers,
                        None,
                    )
        except (urllib.error.URLError, urllib.error.HTTPError, socket.timeout) as exc:
            logger.error("Failed to deliver alert '%s': %s", title, exc)
            return False

        self._sent.append(payload)
        return True

    @staticmethod
    def _build_payload(
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]],
        color: Optional[int],
    ) -> Dict[str, Any]:
        embed: Dict[str, Any] = {
            "title": title,
            "description": message,
            "color": color if color is not None else COLORS[severity.name],
        }
        if context:
            embed["fields"] = [
                {"name": str(k), "value": str(v), "inline": True}
                for k, v in sorted(context.items())
                if v is not None
            ]
        return {
            "content": f"[{severity.name}] {title} | {message}",
            "embeds": [embed],
        }

    # ------------------------------------------------------------------
    # Domain notifications
    # ------------------------------------------------------------------

    def notify_network_online(self, event: NetworkEvent) -> bool:
        return self.notify(
            AlertSeverity.INFO,
            f"{event.network.value} ONLINE",
            "Network is reachable, executing active snipes",
            {"latency_ms": event.latency_ms},
            color=COLORS["SUCCESS"],
        )

    def notify_monitoring(self, profile: str, network: str, started: bool) -> bool:
        action = "started" if started else "stopped"
        return self.notify(
            AlertSeverity.INFO,
            f"Monitoring {action}",
            f"Profile '{profile}' watching {network}",
        )

    def notify_snipe_result(self, profile: str, network: str, result: SnipeResult, test: bool = False) -> bool:
        kind = "Snipe test" if test else "Snipe"
        if result.success:
            return self.notify(
                AlertSeverity.INFO,
                f"[{network}] {kind} succeeded",
                f"Snipe {result.snipe_id} in '{profile}' completed after {result.attempts} attempt(s)",
                {
                    "tx_id": result.tx_id,
                    "amount_out": result.amount_out,
                    "expected_amount_out": result.expected_amount_out,
                    "slippage_pct": round(result.slippage_pct, 2) if result.slippage_pct is not None else None,
                },
                color=COLORS["SUCCESS"],
            )
        return self.notify(
            AlertSeverity.WARNING,
            f"[{network}] {kind} failed",
            f"Snipe {result.snipe_id} in '{profile}' failed after {result.attempts} attempt(s): {result.error}",
        )

    def notify_run_summary(
        self, profile: str, network: str, results: List[SnipeResult], duration_seconds: float
    ) -> bool:
        succeeded = sum(1 for r in results if r.success)
        failed = len(results) - succeeded
        severity = AlertSeverity.INFO if failed == 0 else AlertSeverity.WARNING
        return self.notify(
            severity,
            "Execution summary",
            f"Profile '{profile}' on {network}: {succeeded} succeeded, {failed} failed in {duration_seconds:.1f}s",
        )

    def notify_lock_contention(self, profile: str, holder_id: Optional[str]) -> bool:
        return self.notify(
            AlertSeverity.WARNING,
            "Profile in use elsewhere",
            f"Profile '{profile}' is locked by {holder_id or 'another process'}",
        )

    def notify_lease_lost(self, profile: str, holder_id: Optional[str]) -> bool:
        return self.notify(
            AlertSeverity.CRITICAL,
            "Profile lease lost",
            f"Monitoring of '{profile}' stopped; lease now held by {holder_id or 'nobody'}",
        )


__all__ = ["AlertConfig", "AlertService", "AlertSeverity"]
