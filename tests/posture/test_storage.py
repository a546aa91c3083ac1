"""
Event log and baseline store tests
"""

from datetime import date, datetime, timedelta

from posture_service.models.keypoints import POSTURE_LABELS, PoseFrame, PostureLabel


def _ts(day: date, hour: int = 12) -> float:
    return datetime(day.year, day.month, day.day, hour).timestamp() * 1000.0


# ═══════════════════════════════════════════════════════════════════════════════
# EVENT LOG
# ═══════════════════════════════════════════════════════════════════════════════

def test_record_and_read(event_log):
    event_log.record("alice", PostureLabel.NECK_TILT, 0.4, ts=1000.0)
    event_log.record("alice", "normal", 0.0, ts=2000.0)

    events = event_log.read("alice")

    assert [e.label for e in events] == ["neck_tilt", "normal"]
    assert events[0].score == 0.4
    assert event_log.read("alice", since_ts=1000.0)[0].ts == 2000.0
    assert event_log.read("bob") == []


def test_users_are_isolated(event_log):
    event_log.record("alice", PostureLabel.FORWARD_HEAD, ts=1.0)
    event_log.record("bob", PostureLabel.LEANING_BACK, ts=1.0)

    assert [e.label for e in event_log.read("bob")] == ["leaning_back"]


def test_count_by_label_is_zero_filled(event_log):
    event_log.record("alice", PostureLabel.NECK_TILT, ts=1.0)
    event_log.record("alice", PostureLabel.NECK_TILT, ts=2.0)
    event_log.record("alice", PostureLabel.SHOULDER_TILT, ts=3.0)

    counts = event_log.count_by_label("alice", POSTURE_LABELS)

    assert counts == {
        "normal": 0,
        "neck_tilt": 2,
        "forward_head": 0,
        "shoulder_tilt": 1,
        "leaning_back": 0,
    }
    assert event_log.count_by_label("alice", POSTURE_LABELS, since_ts=2.0)["neck_tilt"] == 0


def test_corrupt_lines_are_skipped(event_log):
    event_log.record("alice", PostureLabel.NECK_TILT, ts=1.0)
    with open(event_log._path("alice"), "a", encoding="utf-8") as f:
        f.write("{not json\n")
    event_log.record("alice", PostureLabel.NORMAL, ts=2.0)

    assert len(event_log.read("alice")) == 2


def test_clear(event_log):
    event_log.record("alice", PostureLabel.NECK_TILT, ts=1.0)

    assert event_log.clear("alice") is True
    assert event_log.read("alice") == []
    assert event_log.clear("alice") is False


def test_daily_trend(event_log):
    today = date(2026, 3, 10)
    event_log.record("alice", PostureLabel.NECK_TILT, ts=_ts(today))
    event_log.record("alice", PostureLabel.NECK_TILT, ts=_ts(today, 9))
    event_log.record("alice", PostureLabel.NORMAL, ts=_ts(today))
    event_log.record("alice", PostureLabel.SHOULDER_TILT, ts=_ts(today - timedelta(days=2)))
    event_log.record("alice", PostureLabel.SHOULDER_TILT, ts=_ts(today - timedelta(days=10)))

    trend = event_log.daily_trend("alice", days=3, exclude=[PostureLabel.NORMAL], today=today)

    assert trend["labels"] == ["03/08", "03/09", "03/10"]
    assert trend["daily"] == [1, 0, 2]
    assert trend["cumulative"] == [1, 1, 3]
    assert trend["max_daily"] == 2
    assert trend["max_cumulative"] == 3

    with_normal = event_log.daily_trend("alice", days=3, today=today)
    assert with_normal["daily"] == [1, 0, 3]


def test_daily_trend_empty(event_log):
    trend = event_log.daily_trend("nobody", days=7, today=date(2026, 1, 7))

    assert trend["daily"] == [0] * 7
    assert trend["labels"][0] == "01/01"
    assert trend["max_daily"] == 1


def test_daily_stack(event_log):
    today = date(2026, 3, 10)
    event_log.record("alice", PostureLabel.NECK_TILT, ts=_ts(today))
    event_log.record("alice", PostureLabel.FORWARD_HEAD, ts=_ts(today, 8))
    event_log.record("alice", PostureLabel.NORMAL, ts=_ts(today))
    event_log.record("alice", PostureLabel.NECK_TILT, ts=_ts(today - timedelta(days=1)))
    event_log.record("alice", PostureLabel.NECK_TILT, ts=_ts(today - timedelta(days=7)))

    stack = event_log.daily_stack("alice", POSTURE_LABELS, days=3, exclude=[PostureLabel.NORMAL], today=today)

    assert [d["day"] for d in stack["days"]] == ["03/08", "03/09", "03/10"]
    assert stack["days"][0]["counts"] == dict.fromkeys(POSTURE_LABELS, 0)
    assert stack["days"][1]["counts"]["neck_tilt"] == 1
    assert stack["days"][2]["counts"]["normal"] == 1
    assert [d["total"] for d in stack["days"]] == [0, 1, 2]
    assert stack["stacked_labels"] == ["neck_tilt", "forward_head", "shoulder_tilt", "leaning_back"]
    assert stack["max_total"] == 2


def test_hourly_histogram(event_log):
    day = date(2026, 3, 10)
    event_log.record("alice", PostureLabel.NECK_TILT, ts=_ts(day, 9))
    event_log.record("alice", PostureLabel.SHOULDER_TILT, ts=_ts(day - timedelta(days=3), 9))
    event_log.record("alice", PostureLabel.NECK_TILT, ts=_ts(day, 23))
    event_log.record("alice", PostureLabel.NORMAL, ts=_ts(day, 0))

    hourly = event_log.hourly_histogram("alice", exclude=[PostureLabel.NORMAL])

    assert len(hourly["hours"]) == 24
    assert hourly["hours"][9] == 2
    assert hourly["hours"][23] == 1
    assert hourly["hours"][0] == 0
    assert hourly["max"] == 2

    assert event_log.hourly_histogram("alice")["hours"][0] == 1
    assert event_log.hourly_histogram("alice", since_ts=_ts(day, 10))["hours"][9] == 0
    assert event_log.hourly_histogram("nobody")["max"] == 1


def test_weekly_heatmap(event_log):
    day = date(2026, 3, 10)
    event_log.record("alice", PostureLabel.NECK_TILT, ts=_ts(day, 14))
    event_log.record("alice", PostureLabel.FORWARD_HEAD, ts=_ts(day, 14))
    event_log.record("alice", PostureLabel.NORMAL, ts=_ts(day, 14))
    event_log.record("alice", PostureLabel.NECK_TILT, ts=_ts(day + timedelta(days=1), 8))

    heatmap = event_log.weekly_heatmap("alice", exclude=[PostureLabel.NORMAL])

    assert len(heatmap["grid"]) == 7
    assert all(len(row) == 24 for row in heatmap["grid"])
    assert heatmap["grid"][day.weekday()][14] == 2
    assert heatmap["grid"][(day.weekday() + 1) % 7][8] == 1
    assert heatmap["max"] == 2

    by_label = event_log.weekly_heatmap("alice", POSTURE_LABELS, exclude=[PostureLabel.NORMAL], by_label=True)
    cell = by_label["grid"][day.weekday()][14]
    assert cell == {
        "normal": 0,
        "neck_tilt": 1,
        "forward_head": 1,
        "shoulder_tilt": 0,
        "leaning_back": 0,
    }
    assert by_label["grid"][0][0] == dict.fromkeys(POSTURE_LABELS, 0)
    assert by_label["max"] == 2


# ═══════════════════════════════════════════════════════════════════════════════
# SESSION LOG
# ═══════════════════════════════════════════════════════════════════════════════

def test_session_start_and_end(session_log):
    first = session_log.start("alice", ts=1000.0)
    second = session_log.start("alice", ts=5000.0)
    session_log.end("alice", first.session_id, ts=4000.0)

    records = session_log.read("alice")

    assert [r.session_id for r in records] == [first.session_id, second.session_id]
    assert records[0].end == 4000.0
    assert records[0].duration_ms == 3000.0
    assert records[1].end is None
    assert records[1].to_dict()["duration_ms"] is None
    assert session_log.read("bob") == []


def test_session_log_skips_orphans_and_corrupt_rows(session_log):
    record = session_log.start("alice", ts=1000.0)
    session_log.end("alice", "unknown", ts=2000.0)
    with open(session_log._path("alice"), "a", encoding="utf-8") as f:
        f.write("{broken\n")
        f.write('{"session_id": "x", "start": "soon"}\n')

    assert [r.session_id for r in session_log.read("alice")] == [record.session_id]

    assert session_log.clear("alice") is True
    assert session_log.read("alice") == []


# ═══════════════════════════════════════════════════════════════════════════════
# BASELINE STORE
# ═══════════════════════════════════════════════════════════════════════════════

def test_baseline_round_trip(baseline_store, make_frame):
    frame = make_frame(timestamp=1712.5, head=(0.0123456789, -0.15))

    baseline_store.save("alice", frame.to_dict())
    restored = PoseFrame.from_dict(baseline_store.load("alice"))

    assert restored == frame
    assert baseline_store.exists("alice")


def test_baseline_missing_or_corrupt(baseline_store):
    assert baseline_store.load("alice") is None

    baseline_store._path("alice").write_text("[1, 2", encoding="utf-8")
    assert baseline_store.load("alice") is None


def test_baseline_delete(baseline_store, neutral_frame):
    baseline_store.save("alice", neutral_frame.to_dict())

    assert baseline_store.delete("alice") is True
    assert not baseline_store.exists("alice")
    assert baseline_store.delete("alice") is False


def test_unsafe_user_ids_stay_in_data_dir(baseline_store, neutral_frame):
    path = baseline_store.save("../../etc/passwd", neutral_frame.to_dict())

    assert path.parent == baseline_store.baselines_dir
