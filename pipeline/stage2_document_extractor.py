"""
Stage 2: Document Extractor (LLM, vision)
===========================================
Turns one report file into extracted text, then into structured parameters
and condition mentions.

Input:  ReportFile (report id + blob reference)
Output: ExtractedDocument, or None when the file could not be processed

Per file:
  1. Fetch raw bytes from the blob store (signed reference)
  2. Vision call: transcribe the document
  3. Text call: structure the transcription into {conditions, parameters}
Network failure, non-2xx responses, or no parseable JSON → None (logged).

Batch: groups of `concurrency` files run in parallel, a fixed delay separates
groups (rate limits), progress (scanned_so_far, total) is reported per group.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime

from blob_store import DEFAULT_MIME_TYPE, BlobStore, detect_mime_type
from config import MAX_TOKENS, SCAN_BATCH_DELAY_SEC, SCAN_BATCH_SIZE
from errors import ConfigurationError, ExtractionFailure
from llm_client import LLMClient
from models import ExtractedDocument, ExtractedParameter, ReportFile, utcnow
from pipeline.stage1_report_selector import is_value_in_range
from prompts.system_prompts import DOCUMENT_PARSER, DOCUMENT_TEXT_EXTRACTOR

logger = logging.getLogger("body_impact")

_TRANSCRIBE_INSTRUCTION = (
    "Extract all text from this medical report, including every test parameter "
    "with its value, unit and normal range."
)


def _clean_str(value) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    if not text or text.lower() in ("null", "none", "n/a"):
        return None
    return text


def _parse_parameters(raw_params, report_id: str, observed_at: datetime | None) -> list[ExtractedParameter]:
    params = []
    if not isinstance(raw_params, list):
        return params
    for raw in raw_params:
        if not isinstance(raw, dict):
            continue
        name = _clean_str(raw.get("name"))
        if not name:
            continue
        value = raw.get("value")
        normal_range = _clean_str(raw.get("normalRange"))
        flag = raw.get("isAbnormal")
        if isinstance(flag, bool):
            is_abnormal = flag
        else:
            is_abnormal = bool(normal_range) and not is_value_in_range(value, normal_range)
        params.append(ExtractedParameter(
            name=name,
            value=value if isinstance(value, (int, float)) and not isinstance(value, bool) else _clean_str(value),
            unit=_clean_str(raw.get("unit")),
            normal_range=normal_range,
            is_abnormal=is_abnormal,
            source_report_id=report_id,
            observed_at=observed_at,
        ))
    return params


def _fetch(blob_store: BlobStore, report_file: ReportFile) -> tuple[bytes, str]:
    fetched = blob_store.fetch_with_type(report_file.file_ref)
    if fetched is None:
        raise ExtractionFailure("Report file not found", report_id=report_file.report_id)
    data, mime = fetched
    if not data:
        raise ExtractionFailure("Report file is empty", report_id=report_file.report_id)
    if mime == DEFAULT_MIME_TYPE and report_file.file_type:
        mime = detect_mime_type(None, f"report.{report_file.file_type.lstrip('.')}")
    return data, mime


def extract(llm: LLMClient, blob_store: BlobStore, report_file: ReportFile,
            observed_at: datetime | None = None) -> ExtractedDocument | None:
    """
    Extract one report file.

    Returns:
        ExtractedDocument, or None on any per-file failure.
    Raises:
        ConfigurationError when the capability itself is not configured.
    """
    report_id = report_file.report_id
    try:
        data, mime = _fetch(blob_store, report_file)

        text = llm.query_with_file(
            DOCUMENT_TEXT_EXTRACTOR, _TRANSCRIBE_INSTRUCTION, data, mime,
            temperature=0.1, max_tokens=MAX_TOKENS,
        )
        if not text or not text.strip():
            raise ExtractionFailure("Empty transcription", report_id=report_id)

        structured = llm.query_json(
            system_prompt=DOCUMENT_PARSER,
            user_message=f"Extracted report text:\n\n{text}",
            temperature=0.2,
            max_tokens=3000,
        )
        if not structured:
            raise ExtractionFailure("No parseable structured result", report_id=report_id)

        raw_conditions = structured.get("conditions")
        conditions = []
        if isinstance(raw_conditions, list):
            conditions = [c.strip() for c in raw_conditions if isinstance(c, str) and c.strip()]

        return ExtractedDocument(
            report_id=report_id,
            extracted_text=text,
            conditions=conditions,
            parameters=_parse_parameters(structured.get("parameters"), report_id, observed_at),
            scanned_at=utcnow(),
        )
    except ConfigurationError:
        raise
    except ExtractionFailure as e:
        logger.warning(f"Report {report_id} | extraction skipped: {e.message}")
        return None
    except Exception as e:
        # SDK / network errors (timeouts, non-2xx) skip this file only
        logger.warning(f"Report {report_id} | extraction failed: {type(e).__name__}: {e}")
        return None


def batch_extract(llm: LLMClient, blob_store: BlobStore, files: list[ReportFile],
                  concurrency: int = SCAN_BATCH_SIZE, inter_batch_delay: float = SCAN_BATCH_DELAY_SEC,
                  on_progress=None, observed_at: dict | None = None, sleep=time.sleep) -> list[ExtractedDocument]:
    """
    Extract files in groups of `concurrency`, sleeping between groups.

    Args:
        observed_at: optional {report_id: datetime} stamped onto extracted parameters
        on_progress: callable(scanned_so_far, total), called after each group
        sleep: delay function (injectable)

    Returns:
        Non-null ExtractedDocuments in input order.
    """
    observed_at = observed_at or {}
    concurrency = max(1, concurrency)
    total = len(files)
    results = []

    with ThreadPoolExecutor(max_workers=concurrency) as pool:
        for start in range(0, total, concurrency):
            group = files[start:start + concurrency]
            docs = list(pool.map(
                lambda f: extract(llm, blob_store, f, observed_at.get(f.report_id)), group
            ))
            results.extend(d for d in docs if d is not None)
            logger.info(f"Batch extraction: {len(results)}/{total} scanned")
            if on_progress:
                on_progress(len(results), total)
            if start + concurrency < total and inter_batch_delay > 0:
                sleep(inter_batch_delay)

    return results
