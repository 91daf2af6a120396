"""
Body-Impact Orchestrator
==========================
One analysis run per subject, composing every stage:

  START → SELECT_REPORTS → (SCAN | SKIP_SCAN) → COLLECT_PARAMETERS_AND_CONDITIONS
        → INFER_CONDITIONS → REQUEST_HOLISTIC_IMPACT → MAP_AND_AGGREGATE
        → PERSIST_SNAPSHOT → DONE

Stage ↔ Module Mapping:
  Stage 1 (Code) → report selection, parameter dedup / budget, re-scan guard
  Stage 2 (LLM)  → document extraction (batched, rate-limited), pattern cache update
  Stage 3A (LLM) → condition inference from abnormal parameters
  Stage 3B (LLM) → condition suggestion from report types
  Stage 4 (LLM)  → holistic body-impact request (fallback: one mention per condition)
  Stage 5 (Code) → anatomical mapping + aggregation

Failure policy:
  - zero reports → DONE with an empty snapshot and a "no data" message
  - capability not configured → ConfigurationError (whole run)
  - any LLM sub-call failure → logged in result["errors"], run continues
  - final write failure → PersistenceFailure carrying the computed result
"""

import logging
import os
import sys
import time
import traceback
from datetime import datetime
from enum import Enum

from config import LOGS_PATH, MODEL_VERSION, SCAN_BATCH_DELAY_SEC, SCAN_BATCH_SIZE
from errors import ConfigurationError, PersistenceFailure, SubjectNotFoundError
from knowledge_loader import load_knowledge_db
from llm_client import LLMClient
from models import (
    PROVENANCE_AI_PARAMETER, PROVENANCE_AI_REPORT_TYPE, PROVENANCE_REPORT,
    AnalysisPatternEntry, BodyImpactSnapshot, ConditionMention, OptimizationConfig, ReportFile,
    to_utc, utcnow,
)
from pattern_cache import PatternCache
from pipeline.stage1_report_selector import (
    deduplicate_parameters, optimize_parameters, parameters_from_report,
    select_for_parameter_extraction, select_for_scanning, should_rescan, summarize_reports,
)
from pipeline.stage2_document_extractor import batch_extract
from pipeline.stage3a_condition_inference import infer_conditions
from pipeline.stage3b_report_type_suggester import get_all_report_types, suggest_from_types
from pipeline.stage4_impact_analyzer import fallback_mentions, request_body_impact
from pipeline.stage5_anatomical_mapper import AnatomicalMapper
from stores import ProfileStore, ReportStore

logger = logging.getLogger("body_impact")

NO_DATA_MESSAGE = "No reports found for analysis"


class RunState(str, Enum):
    START = "START"
    SELECT_REPORTS = "SELECT_REPORTS"
    SCAN = "SCAN"
    SKIP_SCAN = "SKIP_SCAN"
    COLLECT_PARAMETERS_AND_CONDITIONS = "COLLECT_PARAMETERS_AND_CONDITIONS"
    INFER_CONDITIONS = "INFER_CONDITIONS"
    REQUEST_HOLISTIC_IMPACT = "REQUEST_HOLISTIC_IMPACT"
    MAP_AND_AGGREGATE = "MAP_AND_AGGREGATE"
    PERSIST_SNAPSHOT = "PERSIST_SNAPSHOT"
    DONE = "DONE"


def setup_logger(tag: str, log_dir: str = LOGS_PATH) -> logging.Logger:
    """Configure file + console handlers on the shared "body_impact" logger."""
    os.makedirs(log_dir, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_path = os.path.join(log_dir, f"body_impact_{tag}_{timestamp}.log")

    log = logging.getLogger("body_impact")
    log.setLevel(logging.DEBUG)
    log.handlers.clear()

    fh = logging.FileHandler(log_path, encoding="utf-8")
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter(
        "%(asctime)s | %(levelname)-5s | %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
    ))
    log.addHandler(fh)

    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(logging.INFO)
    ch.setFormatter(logging.Formatter("  [LOG] %(message)s"))
    log.addHandler(ch)

    log.info(f"Run log: {log_path}")
    return log


def _log(msg: str, level: str = "info"):
    getattr(logger, level, logger.info)(msg)


def _record_error(result: dict, stage: RunState, e: Exception):
    result["errors"].append({"stage": stage.value, "error": str(e), "traceback": traceback.format_exc()})


class BodyImpactOrchestrator:
    """Runs the full body-impact analysis for one subject at a time."""

    def __init__(self, llm: LLMClient, profile_store: ProfileStore, report_store: ReportStore,
                 blob_store=None, pattern_cache: PatternCache | None = None,
                 knowledge: dict | None = None, config: OptimizationConfig | None = None,
                 concurrency: int = SCAN_BATCH_SIZE, inter_batch_delay: float = SCAN_BATCH_DELAY_SEC,
                 sleep=time.sleep):
        self.llm = llm
        self.profile_store = profile_store
        self.report_store = report_store
        self.blob_store = blob_store
        self.pattern_cache = pattern_cache
        knowledge = knowledge or load_knowledge_db()
        self.mapper = AnatomicalMapper(knowledge["taxonomy"])
        self.patterns_db = knowledge.get("parameter_patterns")
        self.config = config or OptimizationConfig()
        self.concurrency = concurrency
        self.inter_batch_delay = inter_batch_delay
        self.sleep = sleep

    @staticmethod
    def _enter(result: dict, state: RunState):
        result["states"].append(state.value)

    def _stage_done(self, result: dict, state: RunState, t0: float, outcome: str = "OK", level: str = "info"):
        elapsed = round(time.time() - t0, 2)
        result["processing_time"][state.value] = elapsed
        _log(f"Subject {result['subject_id']} | {state.value} | {elapsed}s | {outcome}", level)

    def _cached_entry(self, result: dict, subject_id: str, report_id: str) -> AnalysisPatternEntry | None:
        if self.pattern_cache is None or not self.config.use_caching:
            return None
        try:
            return self.pattern_cache.get(subject_id, report_id)
        except Exception as e:
            # Unreadable cache: treat the report as never scanned
            _record_error(result, RunState.SELECT_REPORTS, e)
            _log(f"Subject {subject_id} | pattern cache read failed for {report_id}: {e}", "warning")
            return None

    def run(self, subject_id: str, enhanced_scan: bool = True, on_progress=None,
            now: datetime | None = None) -> dict:
        """
        Run one analysis pass.

        Returns:
            result dict: snapshot, added_conditions, summary, message, report_summary,
            scanned_report_ids, unmapped, states, errors, processing_time, persisted
        Raises:
            SubjectNotFoundError, ConfigurationError, PersistenceFailure (with .result)
        """
        t_start = time.time()
        now = to_utc(now) or utcnow()
        cfg = self.config
        result = {
            "subject_id": subject_id,
            "snapshot": BodyImpactSnapshot(),
            "added_conditions": [],
            "summary": "",
            "message": None,
            "report_summary": {},
            "scanned_report_ids": [],
            "unmapped": [],
            "states": [],
            "errors": [],
            "processing_time": {},
            "persisted": False,
        }

        # --- START: read profile + reports once ---
        self._enter(result, RunState.START)
        profile = self.profile_store.get_profile(subject_id)
        if profile is None:
            raise SubjectNotFoundError(subject_id)
        reports = self.report_store.list_reports(subject_id)
        subject_info = profile.subject_info()

        # --- SELECT_REPORTS (Stage 1) ---
        self._enter(result, RunState.SELECT_REPORTS)
        t0 = time.time()
        if not reports:
            result["message"] = NO_DATA_MESSAGE
            self._stage_done(result, RunState.SELECT_REPORTS, t0, "no data")
            self._enter(result, RunState.DONE)
            return result
        if not self.llm.is_available():
            raise ConfigurationError(f"LLM backend '{self.llm.backend}' is not configured")

        result["report_summary"] = summarize_reports(reports)
        param_reports = select_for_parameter_extraction(reports, cfg, now)
        scan_ids = {r.report_id for r in select_for_scanning(reports, cfg, now)}

        cached = {}
        to_scan = []
        for report in param_reports:
            entry = self._cached_entry(result, subject_id, report.report_id)
            if entry is not None:
                cached[report.report_id] = entry
            if report.report_id in scan_ids and report.file_ref \
                    and should_rescan(entry, cfg.rescan_max_age_days, now):
                to_scan.append(report)
        self._stage_done(
            result, RunState.SELECT_REPORTS, t0,
            f"{len(param_reports)} reports, {len(to_scan)} to scan, {len(cached)} cached",
        )

        # --- SCAN | SKIP_SCAN (Stage 2) ---
        documents = {}
        if enhanced_scan and to_scan and self.blob_store is not None:
            self._enter(result, RunState.SCAN)
            t0 = time.time()
            try:
                docs = batch_extract(
                    self.llm, self.blob_store,
                    [ReportFile(r.report_id, r.file_ref, r.file_type) for r in to_scan],
                    concurrency=self.concurrency,
                    inter_batch_delay=self.inter_batch_delay,
                    on_progress=on_progress,
                    observed_at={r.report_id: r.effective_date for r in to_scan},
                    sleep=self.sleep,
                )
                for doc in docs:
                    documents[doc.report_id] = doc
                    entry = AnalysisPatternEntry(
                        report_id=doc.report_id,
                        subject_id=subject_id,
                        conditions=list(doc.conditions),
                        parameter_names=[p.name for p in doc.parameters],
                        scanned_at=doc.scanned_at,
                    )
                    cached[doc.report_id] = entry
                    if self.pattern_cache is not None:
                        try:
                            self.pattern_cache.put(entry)
                        except PersistenceFailure as e:
                            _record_error(result, RunState.SCAN, e)
                            _log(f"Subject {subject_id} | cache write failed: {e}", "warning")
                result["scanned_report_ids"] = list(documents)
                self._stage_done(result, RunState.SCAN, t0, f"{len(documents)}/{len(to_scan)} scanned")
            except ConfigurationError:
                raise
            except Exception as e:
                _record_error(result, RunState.SCAN, e)
                self._stage_done(result, RunState.SCAN, t0, f"FAIL (fallback: structured data): {e}", "error")
        else:
            self._enter(result, RunState.SKIP_SCAN)

        # --- COLLECT_PARAMETERS_AND_CONDITIONS ---
        self._enter(result, RunState.COLLECT_PARAMETERS_AND_CONDITIONS)
        t0 = time.time()
        report_conditions = []
        collected = []
        for report in param_reports:
            report_conditions.extend(report.conditions)
            doc = documents.get(report.report_id)
            if doc is not None:
                report_conditions.extend(doc.conditions)
                collected.extend(doc.parameters)
            elif report.report_id in cached:
                report_conditions.extend(cached[report.report_id].conditions)
            collected.extend(parameters_from_report(report))
        parameters = deduplicate_parameters(collected)
        existing = [c for c in profile.conditions if c.condition and c.condition.strip()]
        self._stage_done(
            result, RunState.COLLECT_PARAMETERS_AND_CONDITIONS, t0,
            f"{len(parameters)} parameters, {len(report_conditions)} report conditions, "
            f"{len(existing)} existing",
        )

        # --- INFER_CONDITIONS (Stage 3A + 3B) ---
        self._enter(result, RunState.INFER_CONDITIONS)
        t0 = time.time()
        report_types = get_all_report_types(reports, profile.report_types)
        from_parameters = []
        from_types = []
        try:
            inference_input = optimize_parameters(parameters, cfg.max_parameters_for_inference)
            from_parameters = infer_conditions(self.llm, inference_input, subject_info, self.patterns_db)
        except Exception as e:
            _record_error(result, RunState.INFER_CONDITIONS, e)
            _log(f"Subject {subject_id} | Stage 3A | FAIL (fallback: none): {e}", "error")
        try:
            from_types = suggest_from_types(self.llm, report_types, subject_info)
        except Exception as e:
            _record_error(result, RunState.INFER_CONDITIONS, e)
            _log(f"Subject {subject_id} | Stage 3B | FAIL (fallback: none): {e}", "error")

        known = {c.condition.strip().lower() for c in existing}
        added = []
        candidates = (
            [(c, PROVENANCE_REPORT) for c in report_conditions]
            + [(c, PROVENANCE_AI_PARAMETER) for c in from_parameters]
            + [(c, PROVENANCE_AI_REPORT_TYPE) for c in from_types]
        )
        for label, provenance in candidates:
            label = label.strip()
            key = label.lower()
            if key and key not in known:
                known.add(key)
                added.append(ConditionMention(condition=label, provenance=provenance, date=now))
        result["added_conditions"] = added
        all_conditions = [c.condition.strip() for c in existing] + [c.condition for c in added]
        self._stage_done(
            result, RunState.INFER_CONDITIONS, t0,
            f"+{len(added)} conditions (params={len(from_parameters)}, types={len(from_types)})",
        )

        # --- REQUEST_HOLISTIC_IMPACT (Stage 4) ---
        self._enter(result, RunState.REQUEST_HOLISTIC_IMPACT)
        t0 = time.time()
        try:
            mentions, summary = request_body_impact(
                self.llm, all_conditions, parameters, report_types, subject_info
            )
            result["summary"] = summary
            self._stage_done(result, RunState.REQUEST_HOLISTIC_IMPACT, t0, f"{len(mentions)} mentions")
        except Exception as e:
            mentions = fallback_mentions(all_conditions)
            _record_error(result, RunState.REQUEST_HOLISTIC_IMPACT, e)
            self._stage_done(
                result, RunState.REQUEST_HOLISTIC_IMPACT, t0,
                f"FAIL (fallback: {len(mentions)} condition mentions): {e}", "error",
            )

        # --- MAP_AND_AGGREGATE (Stage 5) ---
        self._enter(result, RunState.MAP_AND_AGGREGATE)
        t0 = time.time()
        body_parts, misses = self.mapper.map_with_misses(mentions, now)
        result["unmapped"] = [m.part_name for m in misses]
        self._stage_done(
            result, RunState.MAP_AND_AGGREGATE, t0,
            f"{len(body_parts)} regions, {len(misses)} unmapped",
        )

        # --- PERSIST_SNAPSHOT ---
        self._enter(result, RunState.PERSIST_SNAPSHOT)
        t0 = time.time()
        snapshot = BodyImpactSnapshot(
            last_analyzed_at=now,
            body_parts=body_parts,
            metadata={
                "totalConditionsAnalyzed": len(all_conditions),
                "totalParametersAnalyzed": len(parameters),
                "totalReportTypes": len(report_types),
                "modelVersion": MODEL_VERSION,
            },
        )
        result["snapshot"] = snapshot
        try:
            if added:
                self.profile_store.add_conditions(subject_id, added)
            self.profile_store.replace_snapshot(subject_id, snapshot)
            result["persisted"] = True
            self._stage_done(result, RunState.PERSIST_SNAPSHOT, t0)
        except Exception as e:
            _record_error(result, RunState.PERSIST_SNAPSHOT, e)
            self._stage_done(result, RunState.PERSIST_SNAPSHOT, t0, f"FAIL: {e}", "error")
            raise PersistenceFailure(
                f"Persisting body-impact snapshot failed for subject {subject_id}: {e}", result=result
            ) from e

        self._enter(result, RunState.DONE)
        total = round(time.time() - t_start, 2)
        result["processing_time"]["total"] = total
        _log(f"Subject {subject_id} | DONE | {total}s | regions={len(body_parts)} | Errors={len(result['errors'])}")
        return result
