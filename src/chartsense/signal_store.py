"""
Signal Store
============

Persists surfaced signals and their outcomes to a JSONL journal.

Features:
- Append-only journal: one line per event ("signal" or "outcome")
- In-memory index rebuilt from the journal on startup
- Win-rate statistics and recent history for the API
- Best-effort: I/O errors are logged, never raised to the caller

Usage:
    store = SignalStore(output_dir="data/signals")

    # When a signal surfaces:
    store.persist_signal(signal)

    # When the user resolves it:
    store.record_outcome(signal.id, Outcome.WIN)

File layout:
    <output_dir>/signals.jsonl
"""

import logging
import threading
from pathlib import Path
from typing import Any, Optional

import orjson

from chartsense.types import SCHEMA_VERSION, Outcome, Signal
from chartsense.utils_time import now_ms

logger = logging.getLogger(__name__)

JOURNAL_NAME = "signals.jsonl"


class SignalStore:
    """
    JSONL signal journal.

    Args:
        output_dir: Directory for the journal file
        filename: Journal file name (default: signals.jsonl)

    Thread Safety:
        All methods are thread-safe via internal lock.
    """

    def __init__(self, output_dir: str = "./data/signals", filename: str = JOURNAL_NAME) -> None:
        self.output_dir = Path(output_dir)
        self.path = self.output_dir / filename

        self._lock = threading.Lock()
        self._records: dict[str, dict[str, Any]] = {}
        self._order: list[str] = []

        self._total_written = 0
        self._write_errors = 0

        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error("signal_store_mkdir_error", extra={"error": str(e), "dir": str(self.output_dir)})

        self._load()

        logger.info(
            "signal_store_initialized",
            extra={"path": str(self.path), "signals_loaded": len(self._order)},
        )

    def _load(self) -> None:
        """Rebuild the in-memory index from the journal."""
        if not self.path.exists():
            return
        try:
            with self.path.open("rb") as fh:
                for raw in fh:
                    raw = raw.strip()
                    if not raw:
                        continue
                    try:
                        event = orjson.loads(raw)
                    except orjson.JSONDecodeError:
                        logger.warning("signal_store_bad_line", extra={"path": str(self.path)})
                        continue
                    self._apply(event)
        except OSError as e:
            logger.error("signal_store_load_error", extra={"error": str(e)})

    def _apply(self, event: dict[str, Any]) -> None:
        kind = event.get("event")
        signal_id = event.get("id")
        if not signal_id:
            return
        if kind == "signal":
            if signal_id not in self._records:
                self._order.append(signal_id)
            self._records[signal_id] = dict(event.get("signal") or {})
        elif kind == "outcome" and signal_id in self._records:
            self._records[signal_id]["outcome"] = event.get("outcome")
            self._records[signal_id]["resolved_ms"] = event.get("ts_ms")

    def _append_locked(self, event: dict[str, Any]) -> bool:
        try:
            line = orjson.dumps(event) + b"\n"
        except TypeError as e:
            logger.warning("signal_store_serialize_error", extra={"error": str(e)})
            return False
        try:
            with self.path.open("ab") as fh:
                fh.write(line)
        except OSError as e:
            self._write_errors += 1
            logger.error("signal_store_write_error", extra={"error": str(e), "path": str(self.path)})
            return False
        self._total_written += 1
        return True

    def persist_signal(self, signal: Signal) -> bool:
        """
        Journal a surfaced signal.

        Returns:
            True if the line reached the file.
        """
        event = {
            "schema_version": SCHEMA_VERSION,
            "event": "signal",
            "id": signal.id,
            "ts_ms": now_ms(),
            "signal": signal.to_dict(),
        }
        with self._lock:
            self._apply(event)
            return self._append_locked(event)

    def record_outcome(self, signal_id: str, outcome: Outcome) -> bool:
        """
        Journal the outcome of a signal.

        Returns:
            True if the line reached the file.
        """
        event = {
            "schema_version": SCHEMA_VERSION,
            "event": "outcome",
            "id": signal_id,
            "ts_ms": now_ms(),
            "outcome": outcome.value,
        }
        with self._lock:
            self._apply(event)
            return self._append_locked(event)

    def stats(self) -> dict[str, Any]:
        """
        Win-rate summary over resolved signals.

        Skipped signals are counted but excluded from the win rate.
        """
        with self._lock:
            outcomes = [r.get("outcome") for r in self._records.values()]
        wins = outcomes.count(Outcome.WIN.value)
        losses = outcomes.count(Outcome.LOSS.value)
        skipped = outcomes.count(Outcome.SKIPPED.value)
        decided = wins + losses
        return {
            "total": len(outcomes),
            "wins": wins,
            "losses": losses,
            "skipped": skipped,
            "pending": len(outcomes) - decided - skipped,
            "win_rate": round(wins / decided * 100.0, 2) if decided else None,
        }

    def history(self, limit: int = 50) -> list[dict[str, Any]]:
        """Most recent signal records, newest first."""
        with self._lock:
            ids = self._order[-limit:] if limit > 0 else []
            return [dict(self._records[i]) for i in reversed(ids)]

    def get(self, signal_id: str) -> Optional[dict[str, Any]]:
        with self._lock:
            record = self._records.get(signal_id)
            return dict(record) if record else None

    def get_stats(self) -> dict:
        return {
            "path": str(self.path),
            "total_written": self._total_written,
            "write_errors": self._write_errors,
            "signals": len(self._order),
        }
