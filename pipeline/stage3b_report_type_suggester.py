"""
Stage 3B: Report-Type Suggester (LLM)
=======================================
Suggests conditions implied by *which* test panels a subject has undergone,
independent of their values (e.g. repeated "HbA1c" panels → diabetes monitoring).

Input:  distinct report type names + optional SubjectInfo
Output: list of condition name strings; [] on any failure (never raises)
"""

import logging
import re

from config import INFERENCE_TEMPERATURE
from errors import InferenceFailure
from llm_client import LLMClient
from models import Report, SubjectInfo
from pipeline.stage3a_condition_inference import parse_condition_list
from prompts.system_prompts import REPORT_TYPE_SUGGESTER

logger = logging.getLogger("body_impact")

# Database ids stored where a type name was expected
_OBJECT_ID_RE = re.compile(r"^[a-f0-9]{20,}$", re.IGNORECASE)


def _is_usable_type(value) -> bool:
    if not isinstance(value, str) or not value.strip():
        return False
    return not (len(value.strip()) > 20 and _OBJECT_ID_RE.match(value.strip()))


def _unique_ci(values) -> list[str]:
    seen = set()
    unique = []
    for v in values:
        key = v.strip().lower()
        if key not in seen:
            seen.add(key)
            unique.append(v.strip())
    return unique


def extract_report_types(reports: list[Report]) -> list[str]:
    """Distinct report type names, first spelling kept, ids skipped."""
    return _unique_ci(r.report_type for r in reports if _is_usable_type(r.report_type))


def get_all_report_types(reports: list[Report], recorded_types: list[str] | None = None) -> list[str]:
    """Report types from the reports merged with those recorded on the profile."""
    recorded = [t for t in (recorded_types or []) if _is_usable_type(t)]
    return _unique_ci(extract_report_types(reports) + recorded)


def suggest_from_types(llm: LLMClient, report_types: list[str],
                       subject_info: SubjectInfo | None = None) -> list[str]:
    types = [t for t in report_types if _is_usable_type(t)]
    if not types:
        return []

    message = "TEST PANELS UNDERGONE:\n" + "\n".join(f"{i}. {t}" for i, t in enumerate(types, 1))
    if subject_info and subject_info.describe():
        message += f"\n\nSUBJECT INFO:\n{subject_info.describe()}"

    try:
        parsed = llm.query_json_array(
            system_prompt=REPORT_TYPE_SUGGESTER,
            user_message=message,
            temperature=INFERENCE_TEMPERATURE,
            max_tokens=1000,
        )
        if parsed is None:
            raise InferenceFailure("No JSON array in report-type response")
        return parse_condition_list(parsed)
    except Exception as e:
        logger.warning(f"Report-type suggestion failed (treated as empty): {e}")
        return []
