"""
Stage 4: Holistic Body-Impact Request (LLM)
=============================================
Asks the capability which body parts are affected, given the full current
condition list (primary signal), collected parameters (secondary corroboration)
and report types.

Input:  conditions, ExtractedParameters, report types, optional SubjectInfo
Output: unmapped BodyPartImpact mentions + free-text summary

Normalization of each returned part:
  severity ∉ {low, medium, high} → "low"
  confidence → float clamped to [0, 1], default 0.5
  missing partName → "Unknown", missing description → "No description available"
  non-list related fields → []
"""

import logging

from config import DEFAULT_CONFIDENCE, DEFAULT_SEVERITY
from errors import InferenceFailure
from llm_client import LLMClient
from models import SEVERITY_LEVELS, BodyPartImpact, ExtractedParameter, SubjectInfo
from prompts.system_prompts import BODY_IMPACT_ANALYZER

logger = logging.getLogger("body_impact")


def _string_list(value) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if v is not None and str(v).strip()]


def _confidence(value) -> float:
    if isinstance(value, bool):
        return DEFAULT_CONFIDENCE
    try:
        conf = float(value)
    except (TypeError, ValueError):
        return DEFAULT_CONFIDENCE
    if conf != conf:  # NaN
        return DEFAULT_CONFIDENCE
    return min(1.0, max(0.0, conf))


def normalize_body_part(raw: dict) -> BodyPartImpact:
    severity = str(raw.get("severity") or "").strip().lower()
    if severity not in SEVERITY_LEVELS:
        severity = DEFAULT_SEVERITY
    part_name = raw.get("partName")
    description = raw.get("description")
    return BodyPartImpact(
        part_name=str(part_name).strip() if part_name and str(part_name).strip() else "Unknown",
        severity=severity,
        description=str(description).strip() if description and str(description).strip()
        else "No description available",
        related_conditions=_string_list(raw.get("relatedConditions")),
        related_parameters=_string_list(raw.get("relatedParameters")),
        confidence=_confidence(raw.get("confidence", DEFAULT_CONFIDENCE)),
    )


def _numbered(items: list[str]) -> str:
    return "\n".join(f"{i}. {item}" for i, item in enumerate(items, 1)) if items else "None"


def build_impact_message(conditions: list[str], parameters: list[ExtractedParameter],
                         report_types: list[str], subject_info: SubjectInfo | None) -> str:
    param_lines = []
    for p in parameters:
        unit = f" {p.unit}" if p.unit else ""
        rng = p.normal_range or "unknown"
        param_lines.append(
            f"{p.name}: {p.value}{unit} (Normal: {rng}, Abnormal: {'Yes' if p.is_abnormal else 'No'})"
        )
    message = (
        "Analyze the following health data and identify affected body parts.\n\n"
        f"DIAGNOSED CONDITIONS (PRIMARY SOURCE):\n{_numbered(conditions)}\n\n"
        f"REPORT PARAMETERS:\n{_numbered(param_lines)}\n\n"
        f"REPORT TYPES:\n{_numbered(report_types)}"
    )
    if subject_info and subject_info.describe():
        message += f"\n\nSUBJECT INFO:\n{subject_info.describe()}"
    return message


def request_body_impact(llm: LLMClient, conditions: list[str], parameters: list[ExtractedParameter],
                        report_types: list[str] | None = None,
                        subject_info: SubjectInfo | None = None) -> tuple[list[BodyPartImpact], str]:
    """
    Returns:
        (mentions, summary). No data → ([], "No health data available for analysis").
    Raises:
        InferenceFailure when the response holds no usable JSON object.
    """
    if not conditions and not parameters:
        return [], "No health data available for analysis"

    result = llm.query_json(
        system_prompt=BODY_IMPACT_ANALYZER,
        user_message=build_impact_message(conditions, parameters, report_types or [], subject_info),
        temperature=0.3,
        max_tokens=3000,
    )
    if not result:
        raise InferenceFailure("No parseable body-impact response")

    raw_parts = result.get("affectedBodyParts")
    if not isinstance(raw_parts, list):
        raw_parts = []
    mentions = [normalize_body_part(p) for p in raw_parts if isinstance(p, dict)]
    summary = result.get("summary") if isinstance(result.get("summary"), str) else ""
    return mentions, summary


def fallback_mentions(conditions: list[str]) -> list[BodyPartImpact]:
    """One low-severity mention per condition, named after the condition itself."""
    return [
        BodyPartImpact(
            part_name=c,
            severity=DEFAULT_SEVERITY,
            description=f"Associated with {c}",
            related_conditions=[c],
            related_parameters=[],
            confidence=DEFAULT_CONFIDENCE,
        )
        for c in conditions
    ]
