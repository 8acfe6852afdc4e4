# test_model.py
"""
Test the baseline Model
Tests training, scoring, chunk merging, fingerprints and serialization
"""

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

import gzip
import os
import pickle
import random
import tempfile

import pytest

from logsieve.core import RawLine, ScoredLine, SourceReport, reload_settings
from logsieve.services.report import assemble_report
from logsieve.services.model import (
    MODEL_FORMAT_VERSION,
    Model,
    compute_fingerprint,
    group_by_source,
    merge_chunks,
    score,
    train,
)

NORMAL = [
    "service started on port 8080",
    "connected to database at 10.0.0.5:5432",
    "processing request 17 for user 42",
    "cache warmed in 120ms",
    "health check ok",
    "processing request 18 for user 7",
    "request completed in 35ms",
    "health check ok",
    "worker 3 idle",
]


def make_lines(texts, source="app.log"):
    return [RawLine(text=text, source=source, ordinal=i) for i, text in enumerate(texts, 1)]


def set_env(**values):
    """Set LOGSIEVE_* env vars and reload settings; returns the keys to clear"""
    keys = []
    for name, value in values.items():
        key = f"LOGSIEVE_{name.upper()}"
        os.environ[key] = value
        keys.append(key)
    reload_settings()
    return keys


def clear_env(keys):
    for key in keys:
        os.environ.pop(key, None)
    reload_settings()


def test_scenario_port_change_not_flagged():
    """Baseline: 3 identical lines; target differs only by port number"""
    print("\n🧪 Scenario A: port change\n")

    baseline = make_lines(["service started on port 8080"] * 3)
    target = make_lines(["service started on port 9090"])

    model = train(baseline)
    report = score(model, target)

    src = report.get_source("app.log")
    print(f"   max score: {src.max_score:.6f}")
    assert src.max_score == pytest.approx(0.0, abs=1e-5)
    assert report.anomaly_count == 0
    assert src.chunks == []
    assert not src.coverage_gap

    print("✅ Port change scores ≈ 0, nothing flagged")


def test_scenario_panic_flagged_with_context():
    """A novel line in the middle of normal lines becomes one chunk with context"""
    print("\n🧪 Scenario B: novel panic line\n")

    model = train(make_lines(NORMAL))

    target_texts = NORMAL[:4] + ["panic: nil pointer dereference"] + NORMAL[4:8]
    report = score(model, make_lines(target_texts), context_lines=3)

    assert report.anomaly_count == 1
    assert report.has_anomalies()
    assert len(report.chunks) == 1

    chunk = report.chunks[0]
    for line in chunk.lines:
        flag = "❗" if line.is_anomaly else "  "
        print(f"   {flag} {line.ordinal:3} [{line.score:.3f}] {line.text}")

    # Anomaly at ordinal 5, three context lines on each side
    assert chunk.source == "app.log"
    assert chunk.start == 2
    assert chunk.end == 8
    assert [line.ordinal for line in chunk.lines] == list(range(2, 9))

    anomalies = chunk.anomalies
    assert len(anomalies) == 1
    assert anomalies[0].text == "panic: nil pointer dereference"
    assert anomalies[0].score > report.threshold

    for line in chunk.lines:
        if not line.is_anomaly:
            assert line.score == 0.0, "Context lines are kept unscored"

    print("\n✅ Panic flagged as one chunk with context")


def test_coverage_gap():
    """A source absent from the baseline is unscored, never anomalous"""
    print("\n🧪 Testing Coverage Gaps\n")

    model = train(make_lines(NORMAL, source="app.log"))
    target = make_lines(NORMAL, source="app.log") + make_lines(
        ["panic: nil pointer dereference", "segfault at 0x0"], source="other.log"
    )
    report = score(model, target)

    gap = report.get_source("other.log")
    assert gap.coverage_gap
    assert gap.unscored_count == 2
    assert gap.anomaly_count == 0
    assert gap.chunks == []
    assert report.coverage_gaps == ["other.log"]
    assert report.unscored_count == 2
    assert report.total_lines == len(NORMAL) + 2
    assert report.anomaly_count == 0

    print(f"✅ Coverage gaps: {report.coverage_gaps}")


def test_score_unknown_sources():
    """With score_unknown_sources, lines without a baseline score 1.0"""
    print("\n🧪 Testing score_unknown_sources\n")

    keys = set_env(score_unknown_sources="true")
    try:
        model = train(make_lines(NORMAL, source="app.log"))
        report = score(model, make_lines(["something new"], source="other.log"))
        src = report.get_source("other.log")
        assert src.coverage_gap
        assert src.unscored_count == 0
        assert src.anomaly_count == 1
        assert src.max_score == 1.0
    finally:
        clear_env(keys)

    print("✅ Unknown source scored at maximum when enabled")


def test_degenerate_baseline():
    """A baseline of empty lines makes everything anomalous, and says so"""
    print("\n🧪 Testing Degenerate Baseline\n")

    model = train(make_lines(["", "   ", ""], source="empty.log"))
    assert model.get_index("empty.log").is_empty

    report = score(model, make_lines(["anything at all", ""], source="empty.log"))
    src = report.get_source("empty.log")

    assert src.degenerate_baseline
    assert not src.coverage_gap
    assert src.anomaly_count == 1, "The empty target line is never anomalous"
    assert src.max_score == 1.0
    print("✅ Degenerate baseline surfaced explicitly")


def test_empty_target_lines_not_anomalous():
    model = train(make_lines(NORMAL))
    report = score(model, make_lines(["", "   ", "health check ok"]))
    assert report.anomaly_count == 0
    assert report.total_lines == 3
    print("✅ Blank target lines are never flagged")


def test_threshold_override():
    print("\n🧪 Testing Thresholds\n")

    model = train(make_lines(NORMAL))
    target = make_lines(["service stopped on port 8080 unexpectedly"])

    # Partial overlap: flagged with a low threshold, not with a high one
    low = score(model, target, threshold=0.05)
    high = score(model, target, threshold=0.95)
    assert low.anomaly_count == 1
    assert high.anomaly_count == 0
    assert low.threshold == 0.05

    keys = set_env(threshold_overrides='{"app.log": 0.95}')
    try:
        report = score(model, target)
        assert report.anomaly_count == 0
    finally:
        clear_env(keys)

    print("✅ Global and per-source thresholds honored")


def test_repeated_anomalies():
    print("\n🧪 Testing Repeated Anomalies\n")

    model = train(make_lines(NORMAL))
    target = make_lines(["panic: nil pointer dereference", "health check ok", "panic: nil pointer dereference"])

    report = score(model, target)
    assert report.anomaly_count == 2

    keys = set_env(report_repeated_anomalies="false")
    try:
        report = score(model, target)
        assert report.anomaly_count == 1
        assert report.chunks[0].anomalies[0].ordinal == 1
    finally:
        clear_env(keys)

    print("✅ Repeats flagged once when report_repeated_anomalies is off")


def test_stop_markers():
    print("\n🧪 Testing Stop Markers\n")

    model = train(make_lines(NORMAL))
    target = make_lines(["health check ok", "run-logsieve --report out.json", "panic: boom"])

    keys = set_env(stop_markers='["run-logsieve"]')
    try:
        report = score(model, target)
        assert report.total_lines == 1
        assert report.anomaly_count == 0
    finally:
        clear_env(keys)

    print("✅ Scoring stops at the marker line")


def test_merge_chunks():
    print("\n🧪 Testing Chunk Merging\n")

    def scored(flags):
        return [
            ScoredLine(ordinal=i, text=f"line {i}", score=0.9 if flag else 0.1, is_anomaly=flag)
            for i, flag in enumerate(flags, 1)
        ]

    # Separate windows
    chunks = merge_chunks("s", scored([0, 0, 1, 0, 0, 0, 1, 0]), context_lines=1)
    assert [(c.start, c.end) for c in chunks] == [(2, 4), (6, 8)]

    # Adjacent windows merge
    chunks = merge_chunks("s", scored([0, 1, 0, 0, 1, 0]), context_lines=1)
    assert [(c.start, c.end) for c in chunks] == [(1, 6)]
    assert chunks[0].anomaly_count == 2

    # Windows clipped at both ends
    chunks = merge_chunks("s", scored([1, 0, 0, 0, 0, 0, 1]), context_lines=2)
    assert [(c.start, c.end) for c in chunks] == [(1, 3), (5, 7)]

    # No context
    chunks = merge_chunks("s", scored([1, 1, 0, 1]), context_lines=0)
    assert [(c.start, c.end) for c in chunks] == [(1, 2), (4, 4)]

    # Anomalies keep their score, context is reset
    chunk = merge_chunks("s", scored([0, 1, 0]), context_lines=1)[0]
    assert [line.score for line in chunk.lines] == [0.0, 0.9, 0.0]

    assert merge_chunks("s", scored([0, 0, 0]), context_lines=3) == []
    print("✅ Windows merge, clip and keep ordinal order")


def test_multiple_sources_ordering():
    print("\n🧪 Testing Source Ordering\n")

    baseline = make_lines(NORMAL, source="b.log") + make_lines(NORMAL, source="a.log")
    model = train(baseline, max_workers=2)
    assert model.sources == ["a.log", "b.log"]
    assert [r.source for r in model.index_reports] == ["a.log", "b.log"]

    target = make_lines(["panic: x"], source="c.log") + make_lines(["panic: y"], source="b.log") \
        + make_lines(["health check ok"], source="a.log")
    random.Random(3).shuffle(target)

    first = score(model, target)
    second = score(model, target)
    assert [s.source for s in first.sources] == ["a.log", "b.log", "c.log"]
    assert [s.chunks for s in first.sources] == [s.chunks for s in second.sources]

    print("✅ Report sources sorted by identity")


def test_failed_source_is_local():
    """A source that fails to train doesn't stop the others"""
    print("\n🧪 Testing Per-Source Training Failure\n")

    good = make_lines(NORMAL, source="good.log")
    # Bypass validation to plant a line the tokenizer can't handle
    bad = [RawLine.model_construct(text=None, source="bad.log", ordinal=1, byte_offset=None)]

    model = train(good + bad, fingerprint="manual-fp")
    assert model.has_source("good.log")
    assert "bad.log" in model.failed_sources
    print(f"   failed: {dict(model.failed_sources)}")

    report = score(model, make_lines(["health check ok"], source="bad.log") + make_lines(NORMAL, source="good.log"))
    bad_report = report.get_source("bad.log")
    assert bad_report.error is not None
    assert bad_report.unscored_count == 1
    assert not bad_report.coverage_gap
    assert report.get_source("good.log").error is None

    print("✅ Failure recorded on the source only")


def test_fingerprint():
    print("\n🧪 Testing Baseline Fingerprint\n")

    lines = make_lines(NORMAL, source="a.log") + make_lines(NORMAL[:3], source="b.log")
    fp = compute_fingerprint(lines)
    print(f"   fingerprint: {fp}")
    assert len(fp) == 64

    shuffled = list(lines)
    random.Random(1).shuffle(shuffled)
    assert compute_fingerprint(shuffled) == fp, "Input order doesn't matter"
    assert compute_fingerprint(group_by_source(lines)) == fp

    changed = make_lines(NORMAL, source="a.log") + make_lines(NORMAL[:2] + ["different"], source="b.log")
    assert compute_fingerprint(changed) != fp

    renamed = make_lines(NORMAL, source="a.log") + make_lines(NORMAL[:3], source="c.log")
    assert compute_fingerprint(renamed) != fp

    # Line boundaries are part of the content
    assert compute_fingerprint(make_lines(["ab", "c"])) != compute_fingerprint(make_lines(["a", "bc"]))

    assert train(lines).fingerprint == fp
    print("✅ Fingerprint depends on content only")


def test_assemble_report():
    print("\n🧪 Testing Report Assembly\n")

    sources = [
        SourceReport(source="z.log", line_count=4, anomaly_count=2, max_score=0.8),
        SourceReport(source="a.log", line_count=3, unscored_count=3, coverage_gap=True),
        SourceReport(source="m.log", line_count=5, anomaly_count=1, max_score=0.5),
    ]
    report = assemble_report(sources, fingerprint="abc", threshold=0.3, context_lines=2)

    assert [s.source for s in report.sources] == ["a.log", "m.log", "z.log"]
    assert report.total_lines == 12
    assert report.anomaly_count == 3
    assert report.unscored_count == 3
    assert report.max_score == 0.8
    assert report.coverage_gaps == ["a.log"]
    assert report.context_lines == 2

    empty = assemble_report([], fingerprint="abc")
    assert empty.total_lines == 0
    assert empty.max_score == 0.0
    assert empty.threshold == 0.3
    print("✅ Sources ordered, totals computed")


def test_group_by_source():
    lines = [
        RawLine(text="second", source="a", ordinal=2),
        RawLine(text="other", source="b", ordinal=1),
        RawLine(text="first", source="a", ordinal=1),
    ]
    grouped = group_by_source(lines)
    assert list(grouped) == ["a", "b"]
    assert [line.text for line in grouped["a"]] == ["first", "second"]


def test_model_is_read_only():
    model = train(make_lines(NORMAL))
    with pytest.raises(TypeError):
        model.indexes["new.log"] = None
    print("✅ Model indexes are read-only")


def test_serialization_round_trip():
    print("\n🧪 Testing Model Serialization\n")

    baseline = make_lines(NORMAL, source="app.log") + make_lines(["", ""], source="empty.log")
    model = train(baseline)

    target = make_lines(
        NORMAL + ["panic: nil pointer dereference", "service stopped on port 8080 unexpectedly"],
        source="app.log"
    ) + make_lines(["x"], source="empty.log")

    data = model.to_bytes()
    restored = Model.from_bytes(data)
    print(f"   {len(data)} bytes → {restored}")
    assert restored.get_stats() == model.get_stats()

    assert restored.fingerprint == model.fingerprint
    assert restored.sources == model.sources
    assert restored.index_reports == model.index_reports

    original = score(model, target)
    again = score(restored, target)
    for a, b in zip(original.sources, again.sources):
        assert [(line.ordinal, line.score, line.is_anomaly) for c in a.chunks for line in c.lines] == \
            [(line.ordinal, line.score, line.is_anomaly) for c in b.chunks for line in c.lines]
        assert a.max_score == b.max_score
        assert a.degenerate_baseline == b.degenerate_baseline

    # Save / load through a file
    with tempfile.TemporaryDirectory() as temp_dir:
        path = Path(temp_dir) / "models" / "baseline.model"
        model.save(path)
        loaded = Model.load(path)
        assert loaded.fingerprint == model.fingerprint
        assert score(loaded, target).max_score == original.max_score

        with pytest.raises(FileNotFoundError):
            Model.load(Path(temp_dir) / "missing.model")

    print("✅ Deserialized model scores identically")


def test_serialization_rejects_bad_data():
    with pytest.raises(ValueError):
        Model.from_bytes(gzip.compress(pickle.dumps({"version": 999})))
    with pytest.raises(ValueError):
        Model.from_bytes(b"not a model")

    # Right version, broken payloads
    broken_payloads = [
        {"version": MODEL_FORMAT_VERSION},
        {"version": MODEL_FORMAT_VERSION, "fingerprint": "fp", "indexes": None},
        {"version": MODEL_FORMAT_VERSION, "fingerprint": "fp", "indexes": {"app.log": {"dimension": 8}}},
        {"version": MODEL_FORMAT_VERSION, "fingerprint": "fp", "indexes": {}, "index_reports": [{"bogus": 1}]},
    ]
    for payload in broken_payloads:
        with pytest.raises(ValueError):
            Model.from_bytes(gzip.compress(pickle.dumps(payload)))
    print("✅ Unknown versions, garbage and malformed payloads rejected")


def test_multi_batch_scoring_matches_single_batch():
    """Distance batches spread over the worker pool give the same report"""
    print("\n🧪 Testing Parallel Batch Scoring\n")

    rng = random.Random(7)
    words = ["disk", "cache", "request", "timeout", "retry", "queue", "shard", "panic"]
    target_texts = [
        " ".join(rng.choice(words) for _ in range(rng.randint(2, 6))) + f" {i}"
        for i in range(200)
    ]
    model = train(make_lines(NORMAL + target_texts[::3]))
    for position in range(25, 200, 50):
        target_texts[position] = f"kernel oops: segfault in module loader at stage {position}"
    target = make_lines(target_texts)

    keys = set_env(score_batch_size="1000")
    try:
        single = score(model, target, max_workers=1)
    finally:
        clear_env(keys)

    keys = set_env(score_batch_size="3")
    try:
        multi = score(model, target, max_workers=4)
    finally:
        clear_env(keys)

    single_scores = [line.score for chunk in single.chunks for line in chunk.lines]
    multi_scores = [line.score for chunk in multi.chunks for line in chunk.lines]
    print(f"   {single.anomaly_count} anomalies single batch, {multi.anomaly_count} multi batch")
    assert single.anomaly_count == multi.anomaly_count >= 4
    assert [(c.start, c.end) for c in single.chunks] == [(c.start, c.end) for c in multi.chunks]
    assert single_scores == pytest.approx(multi_scores)
    print("✅ Multi-batch scoring matches single-batch scoring")


if __name__ == "__main__":
    test_scenario_port_change_not_flagged()
    test_scenario_panic_flagged_with_context()
    test_coverage_gap()
    test_score_unknown_sources()
    test_degenerate_baseline()
    test_empty_target_lines_not_anomalous()
    test_threshold_override()
    test_repeated_anomalies()
    test_stop_markers()
    test_merge_chunks()
    test_multiple_sources_ordering()
    test_failed_source_is_local()
    test_fingerprint()
    test_assemble_report()
    test_group_by_source()
    test_model_is_read_only()
    test_serialization_round_trip()
    test_serialization_rejects_bad_data()
    test_multi_batch_scoring_matches_single_batch()
