"""
Tests for response parsing and backend configuration in llm_client.
No network calls: only the SDK-free paths are exercised.
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import llm_client
from errors import ConfigurationError
from llm_client import LLMClient


# ------------------------------------------------------------------
#  Object parsing
# ------------------------------------------------------------------

def test_parse_object_plain():
    assert LLMClient.parse_json_object('{"a": 1}') == {"a": 1}


def test_parse_object_in_prose_and_fences():
    text = 'Sure! Here is the analysis:\n```json\n{"summary": "ok", "items": [1, 2]}\n```\nThanks.'
    assert LLMClient.parse_json_object(text) == {"summary": "ok", "items": [1, 2]}


def test_parse_object_ignores_braces_inside_strings():
    text = 'Result: {"note": "value {not a brace}", "n": 2} trailing }'
    assert LLMClient.parse_json_object(text) == {"note": "value {not a brace}", "n": 2}


def test_parse_object_repairs_trailing_commas_and_single_quotes():
    assert LLMClient.parse_json_object("{'a': 'x', 'b': [1, 2,],}") == {"a": "x", "b": [1, 2]}


def test_parse_object_unwraps_list_of_objects():
    assert LLMClient.parse_json_object('[{"a": 1}, {"b": 2}]') == {"a": 1}


def test_parse_object_failure_is_none():
    assert LLMClient.parse_json_object("") is None
    assert LLMClient.parse_json_object("no json here") is None
    assert LLMClient.parse_json_object('{"unterminated": ') is None


# ------------------------------------------------------------------
#  Array parsing
# ------------------------------------------------------------------

def test_parse_array_wrapped_in_prose():
    text = 'Based on the values, likely conditions are: ["Type 2 Diabetes", "Anemia"]. Consult a doctor.'
    assert LLMClient.parse_json_array(text) == ["Type 2 Diabetes", "Anemia"]


def test_parse_array_skips_unclosed_bracket():
    text = 'See [1 for details. ["Hypothyroidism"]'
    assert LLMClient.parse_json_array(text) == ["Hypothyroidism"]


def test_parse_array_failure_is_none():
    assert LLMClient.parse_json_array("I cannot determine any conditions.") is None
    assert LLMClient.parse_json_array('{"conditions": "x"}') is None


# ------------------------------------------------------------------
#  Backend configuration
# ------------------------------------------------------------------

def test_missing_key_makes_client_unavailable(monkeypatch):
    monkeypatch.setattr(llm_client, "ANTHROPIC_API_KEY", "")
    client = LLMClient("anthropic")
    assert client.is_available() is False
    with pytest.raises(ConfigurationError):
        client.query("system", "hello")
    with pytest.raises(ConfigurationError):
        client.query_json("system", "hello")


def test_missing_openai_key(monkeypatch):
    monkeypatch.setattr(llm_client, "OPENAI_API_KEY", "")
    assert LLMClient("openai").is_available() is False


def test_unknown_backend_rejected():
    with pytest.raises(ConfigurationError):
        LLMClient("gpt-neo-local")


def test_detect_stage_from_prompts():
    from prompts.system_prompts import (
        BODY_IMPACT_ANALYZER, CONDITION_INFERENCE, DOCUMENT_PARSER,
        DOCUMENT_TEXT_EXTRACTOR, REPORT_TYPE_SUGGESTER,
    )
    assert LLMClient._detect_stage(DOCUMENT_TEXT_EXTRACTOR) == "document_text"
    assert LLMClient._detect_stage(DOCUMENT_PARSER) == "document_parse"
    assert LLMClient._detect_stage(CONDITION_INFERENCE) == "inference"
    assert LLMClient._detect_stage(REPORT_TYPE_SUGGESTER) == "report_type"
    assert LLMClient._detect_stage(BODY_IMPACT_ANALYZER) == "impact"


if __name__ == "__main__":
    import inspect

    # tests taking pytest fixtures only run under pytest
    tests = [v for k, v in globals().items()
             if k.startswith("test_") and not inspect.signature(v).parameters]
    for t in tests:
        try:
            t()
            print(f"  PASS: {t.__name__}")
        except AssertionError as e:
            print(f"  FAIL: {t.__name__} -- {e}")
            sys.exit(1)
    print(f"\nAll {len(tests)} tests passed.")
