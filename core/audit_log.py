"""
snipewatch Core: Audit Logger

Structured JSONL trail of network transitions, snipe lifecycle events and
execution runs for debugging and post-mortems.
"""

import json
import logging
from pathlib import Path
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from core.models import NetworkEvent, SnipeEvent, SnipeResult

logger = logging.getLogger(__name__)


class AuditLogger:
    """
    Structured audit trail logger.

    Records:
    - Online/offline transitions
    - Every snipe lifecycle event (started, pool_found, retrying, ...)
    - One summary line per execution run

    Output format: JSONL (one JSON object per line)
    """

    def __init__(self, audit_file: Optional[str] = None):
        """
        Initialize audit logger.

        Args:
            audit_file: Path to audit log file (default: logs/audit.jsonl)
        """
        if audit_file:
            self.audit_file = Path(audit_file)
        else:
            self.audit_file = Path("logs/audit.jsonl")

        # Ensure directory exists
        self.audit_file.parent.mkdir(parents=True, exist_ok=True)

        logger.info(f"Initialized AuditLogger at {self.audit_file}")

    def _write(self, entry: Dict[str, Any]) -> None:
        self._write_many([entry])

    def _write_many(self, entries: List[Dict[str, Any]]) -> None:
        try:
            with open(self.audit_file, "a", encoding="utf-8") as f:
                f.writelines(json.dumps(entry, default=str) + "\n" for entry in entries)
        except OSError as e:
            logger.error(f"Failed to write audit log: {e}")

    def log_transition(self, profile: str, event: NetworkEvent) -> None:
        self._write({
            "timestamp": event.timestamp.isoformat(),
            "kind": "transition",
            "profile": profile,
            "network": event.network.value,
            "online": event.online,
            "previous_online": event.previous_online,
            "latency_ms": event.latency_ms,
            "consecutive_failures": event.consecutive_failures,
        })

    def log_snipe_event(self, profile: str, event: SnipeEvent) -> None:
        self.log_snipe_events(profile, [event])

    def log_snipe_events(self, profile: str, events: List[SnipeEvent]) -> None:
        """Append a batch of snipe events with a single open/write."""
        entries = []
        for event in events:
            entry = event.to_dict()
            entry["kind"] = "snipe_event"
            entry["profile"] = profile
            entries.append(entry)
        if entries:
            self._write_many(entries)

    def log_run(
        self,
        profile: str,
        network: str,
        trigger: str,
        results: List[SnipeResult],
        duration_seconds: float,
        ts: Optional[datetime] = None,
    ) -> None:
        """
        Log one execution run.

        Args:
            profile: Profile name
            network: MAINNET or REGTEST
            trigger: What started the run ("online_transition", "manual", "test")
            results: Per-snipe outcomes in input order
            duration_seconds: Wall time of the run
        """
        succeeded = sum(1 for r in results if r.success)
        self._write({
            "timestamp": (ts or datetime.now(timezone.utc)).isoformat(),
            "kind": "run",
            "profile": profile,
            "network": network,
            "trigger": trigger,
            "status": self._determine_status(results),
            "total": len(results),
            "succeeded": succeeded,
            "failed": len(results) - succeeded,
            "duration_seconds": round(duration_seconds, 3),
            "results": [r.to_dict() for r in results],
        })
        logger.debug(f"Audited run: profile={profile} succeeded={succeeded}/{len(results)}")

    def _determine_status(self, results: List[SnipeResult]) -> str:
        """Determine run status"""
        if not results:
            return "NO_ACTIVE_SNIPES"
        if all(r.success for r in results):
            return "ALL_SUCCEEDED"
        if any(r.success for r in results):
            return "PARTIAL"
        return "ALL_FAILED"

    def get_recent(self, n: int = 10, kind: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Get the N most recent audit entries.

        Args:
            n: Number of entries to retrieve
            kind: Optional filter ("transition", "snipe_event", "run")

        Returns:
            List of entries (most recent first)
        """
        if not self.audit_file.exists():
            return []

        try:
            with open(self.audit_file, "r", encoding="utf-8") as f:
                lines = f.readlines()
        except OSError as e:
            logger.error(f"Failed to read audit log: {e}")
            return []

        entries = []
        for line in reversed(lines):
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue
            if kind and entry.get("kind") != kind:
                continue
            entries.append(entry)
            if len(entries) >= n:
                break
        return entries
