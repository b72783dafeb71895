"""JSONL journal store for engine events and completed trades."""

from __future__ import annotations

import json
from dataclasses import asdict
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any

from scalp_engine.types import DailyStats, TradeRecord

_ALLOWED_EVENT_TYPES = {
    "signal",
    "order",
    "fill",
    "cancel",
    "tp",
    "sl",
    "timeout",
    "emergency",
    "manual",
    "error",
    "alert",
    "trade",
}


class JournalStore:
    """Append-only JSONL event store, one file per UTC day."""

    def __init__(self, journal_dir: Path) -> None:
        self._journal_dir = journal_dir
        self._journal_dir.mkdir(parents=True, exist_ok=True)

    def append(self, event_type: str, payload: dict[str, Any]) -> None:
        """Append one event line to daily JSONL file."""
        if event_type not in _ALLOWED_EVENT_TYPES:
            raise ValueError(f"unsupported_event_type: {event_type}")
        record = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            "payload": payload,
        }
        file_path = self._file_path_for_day(datetime.now(timezone.utc).date())
        with file_path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(record, ensure_ascii=True) + "\n")

    def append_trade(self, trade: TradeRecord) -> None:
        self.append("trade", asdict(trade))

    def load_recent(self, limit: int, event_type: str | None = None) -> list[dict[str, Any]]:
        """Load recent events from the most recent journal files, oldest first."""
        if limit <= 0:
            return []

        rows: list[dict[str, Any]] = []
        files = sorted(self._journal_dir.glob("*.jsonl"), reverse=True)
        for file in files:
            lines = file.read_text(encoding="utf-8").splitlines()
            for line in reversed(lines):
                if not line.strip():
                    continue
                row = json.loads(line)
                if event_type is not None and row.get("event_type") != event_type:
                    continue
                rows.append(row)
                if len(rows) >= limit:
                    return list(reversed(rows))
        return list(reversed(rows))

    def load_trades(self, limit: int = 500) -> list[TradeRecord]:
        """Completed trades, oldest first."""
        return [TradeRecord(**row["payload"]) for row in self.load_recent(limit, event_type="trade")]

    def daily_stats(self, day: str, tz: Any = timezone.utc, limit: int = 500) -> DailyStats:
        """Rebuild ``DailyStats`` for ``day`` (ISO date in ``tz``) from journaled trades."""
        stats = DailyStats(day=day)
        for trade in self.load_trades(limit):
            closed = datetime.fromisoformat(trade.closed_at)
            if closed.tzinfo is None:
                closed = closed.replace(tzinfo=timezone.utc)
            if closed.astimezone(tz).date().isoformat() == day:
                stats.record(trade.realized_pnl)
        return stats

    def _file_path_for_day(self, day: date) -> Path:
        return self._journal_dir / f"{day.isoformat()}.jsonl"
