"""
Unit tests for Stage 1 report selection and parameter optimization.
"""

import os
import random
import sys
from datetime import datetime, timedelta, timezone

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from models import AnalysisPatternEntry, ExtractedParameter, OptimizationConfig, ParsedDataItem, Report
from pipeline.stage1_report_selector import (
    deduplicate_parameters,
    is_value_in_range,
    optimize_parameters,
    parameters_from_report,
    select_for_parameter_extraction,
    select_for_scanning,
    should_rescan,
    summarize_reports,
)

NOW = datetime(2025, 6, 1, tzinfo=timezone.utc)


def _report(rid, days_ago=None, n_params=0, conditions=(), uploaded_days_ago=None):
    return Report(
        report_id=rid,
        subject_id="s1",
        report_date=NOW - timedelta(days=days_ago) if days_ago is not None else None,
        upload_date=NOW - timedelta(days=uploaded_days_ago) if uploaded_days_ago is not None else None,
        parsed_data=[ParsedDataItem(f"p{i}", "1") for i in range(n_params)],
        conditions=list(conditions),
    )


def _param(name, value=1.0, abnormal=False, normal_range=None, observed_days_ago=None, report_id="r"):
    return ExtractedParameter(
        name=name,
        value=value,
        normal_range=normal_range,
        is_abnormal=abnormal,
        source_report_id=report_id,
        observed_at=NOW - timedelta(days=observed_days_ago) if observed_days_ago is not None else None,
    )


# ------------------------------------------------------------------
#  Report selection
# ------------------------------------------------------------------

def test_selection_cap():
    rng = random.Random(7)
    for n in (0, 1, 5, 10, 25):
        reports = [_report(f"r{i}", rng.randint(0, 300), rng.randint(0, 5)) for i in range(n)]
        for k in (0, 1, 3, 10, 50):
            selected = select_for_scanning(reports, OptimizationConfig(max_reports_to_scan=k), NOW)
            assert len(selected) <= k


def test_relevance_order_date_then_parameter_count():
    reports = [
        _report("old", days_ago=100, n_params=9),
        _report("new_few", days_ago=1, n_params=1),
        _report("new_many", days_ago=1, n_params=5),
        _report("mid", days_ago=30, n_params=0),
    ]
    ordered = select_for_parameter_extraction(reports, OptimizationConfig(), NOW)
    assert [r.report_id for r in ordered] == ["new_many", "new_few", "mid", "old"]


def test_upload_date_used_when_report_date_missing():
    reports = [_report("a", days_ago=50), _report("b", uploaded_days_ago=2)]
    ordered = select_for_parameter_extraction(reports, OptimizationConfig(), NOW)
    assert [r.report_id for r in ordered] == ["b", "a"]


def test_age_filter_drops_old_keeps_undated():
    reports = [_report("recent", 10), _report("ancient", 400), _report("undated")]
    kept = {r.report_id for r in select_for_parameter_extraction(reports, OptimizationConfig(), NOW)}
    assert kept == {"recent", "undated"}


def test_age_filter_disabled_with_zero():
    reports = [_report("recent", 10), _report("ancient", 4000)]
    cfg = OptimizationConfig(max_report_age_days=0)
    assert len(select_for_parameter_extraction(reports, cfg, NOW)) == 2


def test_parameter_extraction_is_uncapped():
    reports = [_report(f"r{i}", i) for i in range(15)]
    cfg = OptimizationConfig(max_reports_to_scan=3)
    assert len(select_for_scanning(reports, cfg, NOW)) == 3
    assert len(select_for_parameter_extraction(reports, cfg, NOW)) == 15


def test_scanning_picks_most_relevant():
    reports = [_report(f"r{i}", days_ago=i * 10) for i in range(6)]
    selected = select_for_scanning(reports, OptimizationConfig(max_reports_to_scan=2), NOW)
    assert [r.report_id for r in selected] == ["r0", "r1"]


# ------------------------------------------------------------------
#  Re-scan guard
# ------------------------------------------------------------------

def test_rescan_guard_freshness_window():
    scanned = NOW
    entry = AnalysisPatternEntry(report_id="r1", subject_id="s1", scanned_at=scanned)
    assert should_rescan(entry, 30, scanned + timedelta(days=29)) is False
    assert should_rescan(entry, 30, scanned + timedelta(days=31)) is True


def test_rescan_guard_never_scanned():
    assert should_rescan(None, 30, NOW) is True


# ------------------------------------------------------------------
#  Parameter dedup / optimization
# ------------------------------------------------------------------

def test_dedup_prefers_abnormal_in_either_order():
    normal = _param("Glucose", 95, abnormal=False, normal_range="70-100", observed_days_ago=1)
    abnormal = _param(" glucose ", 180, abnormal=True, observed_days_ago=90)
    for params in ([normal, abnormal], [abnormal, normal]):
        out = deduplicate_parameters(params)
        assert len(out) == 1
        assert out[0].is_abnormal is True
        assert out[0].value == 180


def test_dedup_prefers_normal_range_then_recency():
    no_range = _param("LDL", 120, observed_days_ago=1)
    with_range = _param("ldl", 110, normal_range="<100", observed_days_ago=60)
    assert deduplicate_parameters([no_range, with_range])[0].value == 110

    older = _param("HDL", 40, normal_range=">40", observed_days_ago=60)
    newer = _param("HDL", 45, normal_range=">40", observed_days_ago=5)
    assert deduplicate_parameters([older, newer])[0].value == 45
    assert deduplicate_parameters([newer, older])[0].value == 45


def test_dedup_keeps_first_seen_order():
    out = deduplicate_parameters([_param("B"), _param("A"), _param("b")])
    assert [p.name for p in out] == ["B", "A"]


def test_optimize_passthrough_under_cap():
    params = [_param(f"p{i}") for i in range(5)]
    assert optimize_parameters(params, 50) == params


def test_optimize_keeps_all_abnormal_then_normals_in_order():
    params = [_param(f"n{i}") for i in range(6)] + [_param("a1", abnormal=True), _param("a2", abnormal=True)]
    out = optimize_parameters(params, 4)
    assert [p.name for p in out] == ["a1", "a2", "n0", "n1"]


def test_optimize_too_many_abnormal_ranks_by_magnitude():
    params = [
        _param("small", 2, abnormal=True),
        _param("neg_big", -300, abnormal=True),
        _param("text", "positive", abnormal=True),
        _param("mid", 40, abnormal=True),
        _param("tie", 40, abnormal=True),
        _param("normal", 1000),
    ]
    out = optimize_parameters(params, 3)
    assert [p.name for p in out] == ["neg_big", "mid", "tie"]


def test_optimize_abnormal_exactly_at_cap_ranks_by_magnitude():
    params = [_param("a", 2, abnormal=True), _param("b", -300, abnormal=True), _param("n", 5)]
    out = optimize_parameters(params, 2)
    assert [p.name for p in out] == ["b", "a"]


def test_optimize_idempotent():
    rng = random.Random(3)
    for n in (0, 10, 60, 120):
        params = [_param(f"p{i}", rng.uniform(-500, 500), abnormal=rng.random() < 0.6) for i in range(n)]
        for cap in (5, 50, 200):
            once = optimize_parameters(params, cap)
            assert optimize_parameters(once, cap) == once


# ------------------------------------------------------------------
#  Structured data fallback
# ------------------------------------------------------------------

def test_is_value_in_range():
    assert is_value_in_range("5.5", "4-6") is True
    assert is_value_in_range(6, "4 - 6") is True
    assert is_value_in_range("7", "4–6") is False
    assert is_value_in_range("3.9", "4—6") is False
    assert is_value_in_range("150", "<100") is False
    assert is_value_in_range("35", ">40") is False
    assert is_value_in_range("45", ">40") is True
    assert is_value_in_range("12 mg/dL", "10-20 mg/dL") is True
    assert is_value_in_range("abc", "10-20") is True
    assert is_value_in_range("5", "see note") is True
    assert is_value_in_range("5", None) is True


def test_parameters_from_report_flags_abnormal():
    report = Report(
        report_id="r1",
        subject_id="s1",
        report_date=NOW,
        parsed_data=[
            ParsedDataItem("HbA1c", "8.1", "%", "4.0-5.6"),
            ParsedDataItem("Sodium", "140", "mmol/L", "135-145"),
            ParsedDataItem("Note", "ok"),
        ],
        parameters=[_param("TSH", 9.0, abnormal=True, report_id=None)],
    )
    params = {p.name: p for p in parameters_from_report(report)}
    assert params["HbA1c"].is_abnormal is True
    assert params["Sodium"].is_abnormal is False
    assert params["Note"].is_abnormal is False
    assert params["TSH"].source_report_id == "r1"
    assert params["HbA1c"].observed_at == NOW


def test_summarize_reports():
    reports = [
        Report("r1", "s1", report_date=NOW - timedelta(days=10),
               parsed_data=[ParsedDataItem("LDL", "190", "mg/dL", "<100")], conditions=["Hyperlipidemia"]),
        Report("r2", "s1", report_date=NOW),
    ]
    summary = summarize_reports(reports)
    assert summary["totalReports"] == 2
    assert summary["reportsWithParameters"] == 1
    assert summary["reportsWithConditions"] == 1
    assert summary["totalParameters"] == 1
    assert summary["totalAbnormalParameters"] == 1
    assert summary["dateRange"]["newest"] == NOW.isoformat()


if __name__ == "__main__":
    tests = [v for k, v in globals().items() if k.startswith("test_")]
    for t in tests:
        try:
            t()
            print(f"  PASS: {t.__name__}")
        except AssertionError as e:
            print(f"  FAIL: {t.__name__} -- {e}")
            sys.exit(1)
    print(f"\nAll {len(tests)} tests passed.")
