"""
Tests for Stage 2 document extraction and batch pacing.
"""

import json
import os
import sys
from datetime import datetime, timezone

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from blob_store import DEFAULT_MIME_TYPE, detect_mime_type
from errors import ConfigurationError
from models import ReportFile
from pipeline.stage2_document_extractor import batch_extract, extract
from prompts.system_prompts import DOCUMENT_PARSER, DOCUMENT_TEXT_EXTRACTOR
from fakes import FakeBlobStore, FakeLLM, network_error

OBSERVED = datetime(2025, 5, 20, tzinfo=timezone.utc)

PARSED = {
    "conditions": ["Type 2 Diabetes", 42, "  "],
    "parameters": [
        {"name": "HbA1c", "value": "8.1", "unit": "%", "normalRange": "4.0-5.6", "isAbnormal": True},
        {"name": "Sodium", "value": 140, "unit": "mmol/L", "normalRange": "135-145"},
        {"name": "LDL", "value": "190", "unit": "null", "normalRange": "<100"},
        {"value": "12"},
        "garbage",
    ],
}


def _llm(parser_response=None, transcription="HbA1c 8.1 % (4.0-5.6)"):
    return FakeLLM({
        DOCUMENT_TEXT_EXTRACTOR: lambda data: transcription,
        DOCUMENT_PARSER: parser_response if parser_response is not None else json.dumps(PARSED),
    })


def _file(rid, ref=None):
    return ReportFile(report_id=rid, file_ref=ref or f"reports/{rid}.png")


def test_extract_success():
    blobs = FakeBlobStore({"reports/r1.png": (b"\x89PNG...", "image/png")})
    doc = extract(_llm(), blobs, _file("r1"), observed_at=OBSERVED)
    assert doc.report_id == "r1"
    assert doc.extracted_text.startswith("HbA1c")
    assert doc.conditions == ["Type 2 Diabetes"]

    params = {p.name: p for p in doc.parameters}
    assert set(params) == {"HbA1c", "Sodium", "LDL"}
    assert params["HbA1c"].is_abnormal is True
    assert params["Sodium"].value == 140
    assert params["Sodium"].is_abnormal is False
    assert params["LDL"].is_abnormal is True
    assert params["LDL"].unit is None
    assert all(p.source_report_id == "r1" for p in doc.parameters)
    assert params["HbA1c"].observed_at == OBSERVED


def test_parser_receives_transcription():
    llm = _llm(transcription="TSH 9.2 mIU/L")
    blobs = FakeBlobStore({"reports/r1.png": (b"img", "image/png")})
    extract(llm, blobs, _file("r1"))
    assert "TSH 9.2 mIU/L" in llm.calls_for(DOCUMENT_PARSER)[0]


def test_missing_object_is_none():
    llm = _llm()
    assert extract(llm, FakeBlobStore({}), _file("gone")) is None
    assert llm.calls == []


def test_fetch_error_is_none():
    blobs = FakeBlobStore({"reports/r1.png": network_error("reports/r1.png")})
    assert extract(_llm(), blobs, _file("r1")) is None


def test_unparseable_structure_is_none():
    blobs = FakeBlobStore({"reports/r1.png": (b"img", "image/png")})
    assert extract(_llm(parser_response="I could not read this report."), blobs, _file("r1")) is None


def test_empty_transcription_is_none():
    blobs = FakeBlobStore({"reports/r1.png": (b"img", "image/png")})
    assert extract(_llm(transcription="   "), blobs, _file("r1")) is None


def test_capability_error_is_none():
    llm = FakeLLM({DOCUMENT_TEXT_EXTRACTOR: TimeoutError("read timed out")})
    blobs = FakeBlobStore({"reports/r1.png": (b"img", "image/png")})
    assert extract(llm, blobs, _file("r1")) is None


def test_unconfigured_capability_raises():
    blobs = FakeBlobStore({"reports/r1.png": (b"img", "image/png")})
    with pytest.raises(ConfigurationError):
        extract(FakeLLM(available=False), blobs, _file("r1"))


def test_batch_pacing_progress_and_failures():
    files = [_file(f"r{i}") for i in range(7)]
    objects = {f.file_ref: (b"img", "image/png") for f in files}
    objects["reports/r4.png"] = None
    blobs = FakeBlobStore(objects)
    sleeps, progress = [], []

    docs = batch_extract(
        _llm(), blobs, files, concurrency=3, inter_batch_delay=2.0,
        on_progress=lambda done, total: progress.append((done, total)),
        sleep=sleeps.append,
    )

    assert [d.report_id for d in docs] == ["r0", "r1", "r2", "r3", "r5", "r6"]
    assert sleeps == [2.0, 2.0]
    assert progress == [(3, 7), (5, 7), (6, 7)]
    assert sorted(blobs.fetched) == sorted(f.file_ref for f in files)


def test_batch_single_group_never_sleeps():
    files = [_file("r0"), _file("r1")]
    blobs = FakeBlobStore({f.file_ref: (b"img", "image/png") for f in files})
    sleeps = []
    docs = batch_extract(_llm(), blobs, files, concurrency=3, sleep=sleeps.append)
    assert len(docs) == 2
    assert sleeps == []


def test_batch_empty():
    assert batch_extract(_llm(), FakeBlobStore(), [], sleep=lambda s: None) == []


def test_detect_mime_type():
    assert detect_mime_type("image/png; charset=binary", "x.pdf") == "image/png"
    assert detect_mime_type(None, "https://cdn.example.com/r/report.PDF?sig=abc") == "application/pdf"
    assert detect_mime_type(DEFAULT_MIME_TYPE, "reports/scan.jpg") == "image/jpeg"
    assert detect_mime_type(None, "reports/no-extension") == DEFAULT_MIME_TYPE


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
