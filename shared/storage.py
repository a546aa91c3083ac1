"""
PostureCare Storage

Local file storage for posture events, monitoring sessions and per-user baselines.
Events and sessions are append-only JSON-lines logs; baselines are one JSON file per user.
Labels and baselines are stored as plain JSON values; callers own their types.
"""

import json
import logging
import re
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from core.config import settings

# Configure logging
logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"[^A-Za-z0-9_.@-]")


def _safe_name(user_id: str) -> str:
    """Filesystem-safe form of a user id."""
    cleaned = _SAFE_ID.sub("_", user_id.strip())
    return cleaned or "anonymous"


def _default_base_path() -> Path:
    return Path(settings.DATA_PATH)


def _label_values(labels: Iterable[Any]) -> List[str]:
    return [getattr(label, "value", label) for label in labels]


def _local_time(ts: float) -> datetime:
    """Unix ms -> naive local datetime."""
    return datetime.fromtimestamp(ts / 1000.0)


def _read_jsonl(path: Path, lock: threading.Lock) -> List[Dict[str, Any]]:
    """Objects of a JSON-lines file. Corrupt lines are logged and skipped."""
    if not path.exists():
        return []

    with lock:
        with open(path, "r", encoding="utf-8") as f:
            lines = f.readlines()

    rows = []
    for line_no, line in enumerate(lines, start=1):
        line = line.strip()
        if not line:
            continue
        try:
            row = json.loads(line)
        except ValueError as e:
            logger.warning(f"⚠️ Skipping corrupt line {line_no} in {path.name}: {e}")
            continue
        if not isinstance(row, dict):
            logger.warning(f"⚠️ Skipping corrupt line {line_no} in {path.name}: not an object")
            continue
        rows.append(row)
    return rows


@dataclass(frozen=True)
class PostureEvent:
    """One logged posture observation."""
    ts: float  # unix ms
    label: str
    score: Optional[float] = None
    user_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ts": self.ts,
            "label": self.label,
            "score": self.score,
            "user_id": self.user_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PostureEvent":
        score = data.get("score")
        return cls(
            ts=float(data["ts"]),
            label=str(data["label"]),
            score=None if score is None else float(score),
            user_id=data.get("user_id"),
        )


# ═══════════════════════════════════════════════════════════════════════════════
# EVENT LOG
# ═══════════════════════════════════════════════════════════════════════════════

class LocalEventLog:
    """
    Append-only posture event log.

    Stores events under <base_path>/events/<user>.jsonl.
    """

    def __init__(self, base_path: Optional[str] = None):
        self.base_path = Path(base_path) if base_path else _default_base_path()
        self.events_dir = self.base_path / "events"
        self.events_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

        logger.info(f"📁 LocalEventLog initialized at: {self.events_dir}")

    def _path(self, user_id: str) -> Path:
        return self.events_dir / f"{_safe_name(user_id)}.jsonl"

    def record(
        self,
        user_id: str,
        label: str,
        score: Optional[float] = None,
        ts: Optional[float] = None,
    ) -> PostureEvent:
        """Append one event. ``ts`` defaults to now (unix ms)."""
        event = PostureEvent(
            ts=ts if ts is not None else time.time() * 1000.0,
            label=getattr(label, "value", label),
            score=score,
            user_id=user_id,
        )
        with self._lock:
            with open(self._path(user_id), "a", encoding="utf-8") as f:
                f.write(json.dumps(event.to_dict()) + "\n")
        return event

    def read(self, user_id: str, since_ts: Optional[float] = None) -> List[PostureEvent]:
        """Events for a user, optionally only those strictly after ``since_ts``."""
        events = []
        for row in _read_jsonl(self._path(user_id), self._lock):
            try:
                event = PostureEvent.from_dict(row)
            except (ValueError, KeyError, TypeError) as e:
                logger.warning(f"⚠️ Skipping malformed event for {user_id}: {e}")
                continue
            if since_ts is None or event.ts > since_ts:
                events.append(event)
        return events

    def _timed(
        self,
        user_id: str,
        exclude: Iterable[str] = (),
        since_ts: Optional[float] = None,
    ) -> List[Tuple[PostureEvent, datetime]]:
        excluded = set(_label_values(exclude))
        return [
            (event, _local_time(event.ts))
            for event in self.read(user_id, since_ts)
            if event.label not in excluded
        ]

    def clear(self, user_id: str) -> bool:
        path = self._path(user_id)
        with self._lock:
            if path.exists():
                path.unlink()
                logger.info(f"🗑️ Cleared events for {user_id}")
                return True
        return False

    def count_by_label(
        self,
        user_id: str,
        labels: Iterable[str] = (),
        since_ts: Optional[float] = None,
    ) -> Dict[str, int]:
        """Occurrences per label; every label in ``labels`` is present, zero-filled."""
        counts = {getattr(label, "value", label): 0 for label in labels}
        for event in self.read(user_id, since_ts):
            counts[event.label] = counts.get(event.label, 0) + 1
        return counts

    def daily_trend(
        self,
        user_id: str,
        days: int = 30,
        exclude: Iterable[str] = (),
        today: Optional[date] = None,
    ) -> Dict[str, Any]:
        """
        Per-day event totals over the last ``days`` local days, ending today.

        Returns:
            Dict with day labels (MM/DD), daily counts and cumulative counts
        """
        days = max(1, int(days))
        today = today or date.today()
        start = today - timedelta(days=days - 1)
        buckets = {start + timedelta(days=i): 0 for i in range(days)}

        for _, when in self._timed(user_id, exclude):
            day = when.date()
            if day in buckets:
                buckets[day] += 1

        labels, daily, cumulative = [], [], []
        running = 0
        for day in sorted(buckets):
            labels.append(day.strftime("%m/%d"))
            daily.append(buckets[day])
            running += buckets[day]
            cumulative.append(running)

        return {
            "labels": labels,
            "daily": daily,
            "cumulative": cumulative,
            "max_daily": max([1] + daily),
            "max_cumulative": max([1] + cumulative),
        }

    def daily_stack(
        self,
        user_id: str,
        labels: Iterable[str],
        days: int = 7,
        exclude: Iterable[str] = (),
        today: Optional[date] = None,
    ) -> Dict[str, Any]:
        """
        Per-label event counts for each of the last ``days`` local days.

        Every day carries a zero-filled count for each of ``labels``; its
        ``total`` leaves out the ``exclude`` labels.

        Returns:
            {"days": [{"day": "MM/DD", "counts": {...}, "total": n}, ...],
             "stacked_labels": [...], "max_total": n}
        """
        days = max(1, int(days))
        all_labels = _label_values(labels)
        excluded = set(_label_values(exclude))
        stacked = [label for label in all_labels if label not in excluded]

        today = today or date.today()
        start = today - timedelta(days=days - 1)
        buckets = {start + timedelta(days=i): dict.fromkeys(all_labels, 0) for i in range(days)}

        for event, when in self._timed(user_id):
            counts = buckets.get(when.date())
            if counts is not None:
                counts[event.label] = counts.get(event.label, 0) + 1

        series = []
        for day in sorted(buckets):
            counts = buckets[day]
            series.append({
                "day": day.strftime("%m/%d"),
                "counts": counts,
                "total": sum(n for label, n in counts.items() if label not in excluded),
            })

        return {
            "days": series,
            "stacked_labels": stacked,
            "max_total": max([1] + [d["total"] for d in series]),
        }

    def hourly_histogram(
        self,
        user_id: str,
        exclude: Iterable[str] = (),
        since_ts: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Events per local hour of day: 24 buckets, index 0 is midnight."""
        hours = [0] * 24
        for _, when in self._timed(user_id, exclude, since_ts):
            hours[when.hour] += 1
        return {"hours": hours, "max": max(hours) or 1}

    def weekly_heatmap(
        self,
        user_id: str,
        labels: Iterable[str] = (),
        exclude: Iterable[str] = (),
        since_ts: Optional[float] = None,
        by_label: bool = False,
    ) -> Dict[str, Any]:
        """
        Weekday x hour event grid, rows Monday..Sunday, columns hour 0..23.

        With ``by_label`` each cell is a zero-filled {label: count} dict over
        ``labels`` instead of a plain count.

        Returns:
            {"grid": [[...] x 24] x 7, "max": largest cell total (at least 1)}
        """
        timed = self._timed(user_id, exclude, since_ts)

        if not by_label:
            grid = [[0] * 24 for _ in range(7)]
            for _, when in timed:
                grid[when.weekday()][when.hour] += 1
            return {"grid": grid, "max": max(max(row) for row in grid) or 1}

        all_labels = _label_values(labels)
        cells = [[dict.fromkeys(all_labels, 0) for _ in range(24)] for _ in range(7)]
        for event, when in timed:
            cell = cells[when.weekday()][when.hour]
            cell[event.label] = cell.get(event.label, 0) + 1
        peak = max(sum(cell.values()) for row in cells for cell in row)
        return {"grid": cells, "max": peak or 1}


# ═══════════════════════════════════════════════════════════════════════════════
# SESSION LOG
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class SessionRecord:
    """One monitoring session; ``end`` is None while it is still open."""
    session_id: str
    start: float  # unix ms
    end: Optional[float] = None
    user_id: Optional[str] = None

    @property
    def duration_ms(self) -> Optional[float]:
        if self.end is None:
            return None
        return self.end - self.start

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "start": self.start,
            "end": self.end,
            "duration_ms": self.duration_ms,
            "user_id": self.user_id,
        }


class LocalSessionLog:
    """
    Monitoring session start/end log.

    Stores <base_path>/sessions/<user>.jsonl. A session writes one row when it
    opens and one when it closes; rows are joined on ``session_id`` when read.
    """

    def __init__(self, base_path: Optional[str] = None):
        self.base_path = Path(base_path) if base_path else _default_base_path()
        self.sessions_dir = self.base_path / "sessions"
        self.sessions_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

        logger.info(f"📁 LocalSessionLog initialized at: {self.sessions_dir}")

    def _path(self, user_id: str) -> Path:
        return self.sessions_dir / f"{_safe_name(user_id)}.jsonl"

    def _append(self, user_id: str, row: Dict[str, Any]):
        with self._lock:
            with open(self._path(user_id), "a", encoding="utf-8") as f:
                f.write(json.dumps(row) + "\n")

    def start(self, user_id: str, ts: Optional[float] = None) -> SessionRecord:
        record = SessionRecord(
            session_id=uuid.uuid4().hex[:12],
            start=ts if ts is not None else time.time() * 1000.0,
            user_id=user_id,
        )
        self._append(user_id, {"session_id": record.session_id, "start": record.start})
        return record

    def end(self, user_id: str, session_id: str, ts: Optional[float] = None) -> float:
        """Close a session. Returns the end time (unix ms)."""
        end = ts if ts is not None else time.time() * 1000.0
        self._append(user_id, {"session_id": session_id, "end": end})
        return end

    def read(self, user_id: str) -> List[SessionRecord]:
        """Sessions in start order. End rows without a start row are ignored."""
        records: Dict[str, SessionRecord] = {}
        for row in _read_jsonl(self._path(user_id), self._lock):
            session_id = row.get("session_id")
            try:
                if "start" in row:
                    records[session_id] = SessionRecord(
                        session_id=str(session_id),
                        start=float(row["start"]),
                        user_id=user_id,
                    )
                elif "end" in row and session_id in records:
                    records[session_id].end = float(row["end"])
            except (TypeError, ValueError) as e:
                logger.warning(f"⚠️ Skipping malformed session row for {user_id}: {e}")
        return sorted(records.values(), key=lambda r: r.start)

    def clear(self, user_id: str) -> bool:
        path = self._path(user_id)
        with self._lock:
            if path.exists():
                path.unlink()
                logger.info(f"🗑️ Cleared sessions for {user_id}")
                return True
        return False


# ═══════════════════════════════════════════════════════════════════════════════
# BASELINE STORE
# ═══════════════════════════════════════════════════════════════════════════════

class LocalBaselineStore:
    """
    Per-user baseline persistence.

    Stores <base_path>/baselines/<user>.json holding one JSON object.
    """

    def __init__(self, base_path: Optional[str] = None):
        self.base_path = Path(base_path) if base_path else _default_base_path()
        self.baselines_dir = self.base_path / "baselines"
        self.baselines_dir.mkdir(parents=True, exist_ok=True)

        logger.info(f"📁 LocalBaselineStore initialized at: {self.baselines_dir}")

    def _path(self, user_id: str) -> Path:
        return self.baselines_dir / f"{_safe_name(user_id)}.json"

    def save(self, user_id: str, data: Dict[str, Any]) -> Path:
        path = self._path(user_id)
        tmp_path = path.with_suffix(".json.tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f)
        tmp_path.replace(path)
        logger.info(f"✅ Saved baseline for {user_id} -> {path}")
        return path

    def load(self, user_id: str) -> Optional[Dict[str, Any]]:
        path = self._path(user_id)
        if not path.exists():
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except ValueError as e:
            logger.error(f"❌ Unreadable baseline for {user_id}: {e}")
            return None
        if not isinstance(data, dict):
            logger.error(f"❌ Unreadable baseline for {user_id}: not an object")
            return None
        return data

    def exists(self, user_id: str) -> bool:
        return self._path(user_id).exists()

    def delete(self, user_id: str) -> bool:
        path = self._path(user_id)
        if path.exists():
            path.unlink()
            logger.info(f"🗑️ Deleted baseline for {user_id}")
            return True
        return False
