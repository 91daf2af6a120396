"""
Stage 1: Report Selector / Optimizer (Deterministic Code)
===========================================================
Decides which reports go to expensive document extraction and bounds the
parameter set sent to condition inference.

Input:  all Reports for a subject + OptimizationConfig
Output: reports to scan (capped), reports for parameter collection (uncapped),
        deduplicated / bounded ExtractedParameter lists

Rules:
  - Age filter: drop reports older than max_report_age_days (0 disables);
    reports without any date are kept
  - Relevance: report date descending, then parameter count descending
  - Scan cap: max_reports_to_scan; parameter collection uses the full list
  - Dedup by lower-cased trimmed name: abnormal > has normal range > most recent
  - Inference budget: all abnormal first, then normals in original order
  - Re-scan guard: skip reports whose cache entry is younger than rescan_max_age_days
"""

import logging
import re
from datetime import datetime, timedelta

from models import (
    EPOCH, AnalysisPatternEntry, ExtractedParameter, OptimizationConfig, Report,
    parse_number, to_utc, utcnow,
)
from pattern_cache import is_stale

logger = logging.getLogger("body_impact")

_RANGE_SPLIT_RE = re.compile(r"\s*[-–—]\s*")


# ------------------------------------------------------------------
#  Report selection
# ------------------------------------------------------------------

def _relevance_key(report: Report) -> tuple:
    return (report.effective_date or EPOCH, report.parameter_count)


def filter_by_age(reports: list[Report], max_age_days: int, now: datetime | None = None) -> list[Report]:
    if not max_age_days or max_age_days <= 0:
        return list(reports)
    cutoff = (to_utc(now) or utcnow()) - timedelta(days=max_age_days)
    kept = []
    for report in reports:
        when = report.effective_date
        if when is None or when >= cutoff:
            kept.append(report)
    return kept


def select_for_parameter_extraction(reports: list[Report], config: OptimizationConfig | None = None,
                                    now: datetime | None = None) -> list[Report]:
    """Age-filtered, relevance-sorted list with no cap."""
    config = config or OptimizationConfig()
    selected = filter_by_age(reports, config.max_report_age_days, now)
    if config.prioritize_recent:
        # Stable sort: equal keys keep their input order
        selected = sorted(selected, key=_relevance_key, reverse=True)
    return selected


def select_for_scanning(reports: list[Report], config: OptimizationConfig | None = None,
                        now: datetime | None = None) -> list[Report]:
    """Same ordering as parameter extraction, truncated to max_reports_to_scan."""
    config = config or OptimizationConfig()
    cap = max(config.max_reports_to_scan, 0)
    selected = select_for_parameter_extraction(reports, config, now)[:cap]
    logger.info(f"Selected {len(selected)} reports for scanning out of {len(reports)} total")
    return selected


def should_rescan(entry: AnalysisPatternEntry | None, max_age_days: int,
                  now: datetime | None = None) -> bool:
    """True when the report has never been scanned or its cache entry is stale."""
    if entry is None:
        return True
    return is_stale(entry, max_age_days, now)


# ------------------------------------------------------------------
#  Parameters
# ------------------------------------------------------------------

def is_value_in_range(value, normal_range: str | None) -> bool:
    """
    True when value lies inside normal_range.
      ">X"  -> value > X
      "<X"  -> value < X
      "X-Y" -> X <= value <= Y (hyphen, en dash or em dash)
    No range, unparseable range or non-numeric value counts as in range.
    """
    if not normal_range:
        return True
    number = parse_number(value)
    if number is None:
        return True
    text = str(normal_range).strip()

    if text.startswith(">") or text.startswith("<"):
        bound = parse_number(text.lstrip("<>="))
        if bound is None:
            return True
        return number > bound if text.startswith(">") else number < bound

    # Split on the range separator that follows the first number
    m = re.match(r"\s*(-?\d+(?:\.\d+)?)(.*)", text.replace(",", ""))
    if not m:
        return True
    parts = _RANGE_SPLIT_RE.split(m.group(2).strip(), maxsplit=1)
    if len(parts) != 2 or parts[0] != "":
        return True
    low = float(m.group(1))
    high = parse_number(parts[1])
    if high is None:
        return True
    return low <= number <= high


def parameters_from_report(report: Report) -> list[ExtractedParameter]:
    """Typed parameters for a report: its stored parameters plus its structured parsedData."""
    observed = report.effective_date
    params = []
    for p in report.parameters:
        params.append(ExtractedParameter(
            name=p.name,
            value=p.value,
            unit=p.unit,
            normal_range=p.normal_range,
            is_abnormal=p.is_abnormal,
            source_report_id=p.source_report_id or report.report_id,
            observed_at=p.observed_at or observed,
        ))
    for item in report.parsed_data:
        if not item.keyword:
            continue
        params.append(ExtractedParameter(
            name=item.keyword,
            value=item.value,
            unit=item.unit,
            normal_range=item.normal_range,
            is_abnormal=bool(item.normal_range) and not is_value_in_range(item.value, item.normal_range),
            source_report_id=report.report_id,
            observed_at=observed,
        ))
    return params


def _preference_key(param: ExtractedParameter) -> tuple:
    return (param.is_abnormal, bool(param.normal_range), to_utc(param.observed_at) or EPOCH)


def deduplicate_parameters(parameters: list[ExtractedParameter]) -> list[ExtractedParameter]:
    """One parameter per normalized name, in first-seen order."""
    chosen: dict[str, ExtractedParameter] = {}
    for param in parameters:
        key = param.normalized_name
        if not key:
            continue
        existing = chosen.get(key)
        if existing is None or _preference_key(param) > _preference_key(existing):
            chosen[key] = param
    return list(chosen.values())


def optimize_parameters(parameters: list[ExtractedParameter], max_count: int) -> list[ExtractedParameter]:
    """Bound the inference payload: abnormal always first, normals fill the remaining budget."""
    if len(parameters) <= max_count:
        return list(parameters)

    abnormal = [p for p in parameters if p.is_abnormal]
    normal = [p for p in parameters if not p.is_abnormal]

    # abnormal filling the cap exactly is also re-ranked, not kept in input order
    if len(abnormal) >= max_count:
        def magnitude(item):
            idx, p = item
            v = p.numeric_value
            return (-abs(v) if v is not None else float("inf"), idx)
        ranked = sorted(enumerate(abnormal), key=magnitude)
        return [p for _, p in ranked[:max_count]]

    return abnormal + normal[:max_count - len(abnormal)]


# ------------------------------------------------------------------
#  Summary statistics
# ------------------------------------------------------------------

def summarize_reports(reports: list[Report]) -> dict:
    reports_with_parameters = 0
    reports_with_conditions = 0
    total_parameters = 0
    total_abnormal = 0
    dates = []

    for report in reports:
        count = report.parameter_count
        if count > 0:
            reports_with_parameters += 1
            total_parameters += count
            total_abnormal += sum(1 for p in parameters_from_report(report) if p.is_abnormal)
        if report.conditions:
            reports_with_conditions += 1
        if report.effective_date:
            dates.append(report.effective_date)

    return {
        "totalReports": len(reports),
        "reportsWithParameters": reports_with_parameters,
        "reportsWithConditions": reports_with_conditions,
        "totalParameters": total_parameters,
        "totalAbnormalParameters": total_abnormal,
        "dateRange": {
            "oldest": min(dates).isoformat() if dates else None,
            "newest": max(dates).isoformat() if dates else None,
        },
    }
