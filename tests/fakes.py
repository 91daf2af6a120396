"""Scripted stand-ins for the external capability and the blob store."""

import os
import sys
import threading

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from errors import ExtractionFailure
from llm_client import LLMClient


class FakeLLM(LLMClient):
    """
    LLMClient whose transport is a dict keyed by system prompt.
    Values: a response string, a callable(user_message or file bytes) -> str,
    or an Exception instance to raise. JSON parsing is the real client's.
    """

    def __init__(self, responses: dict | None = None, available: bool = True):
        self.backend = "fake"
        self.client = object() if available else None
        self.model = None
        self.responses = responses or {}
        self.calls = []
        self._lock = threading.Lock()

    def is_available(self) -> bool:
        return self.client is not None

    def _respond(self, system_prompt, payload):
        self._require_available()
        with self._lock:
            self.calls.append((system_prompt, payload))
        resp = self.responses.get(system_prompt, "")
        if isinstance(resp, Exception):
            raise resp
        if callable(resp):
            return resp(payload)
        return resp

    def query(self, system_prompt, user_message, temperature=None, max_tokens=None, prefill=None):
        return self._respond(system_prompt, user_message)

    def query_with_file(self, system_prompt, instruction, data, mime_type,
                        temperature=None, max_tokens=None):
        return self._respond(system_prompt, data)

    def calls_for(self, system_prompt) -> list:
        return [payload for prompt, payload in self.calls if prompt == system_prompt]


class FakeBlobStore:
    """ref -> (bytes, mime) | None (missing) | Exception (fetch error)."""

    def __init__(self, objects: dict | None = None):
        self.objects = objects or {}
        self.fetched = []

    def fetch_with_type(self, report_ref):
        self.fetched.append(report_ref)
        obj = self.objects.get(report_ref)
        if isinstance(obj, Exception):
            raise obj
        return obj

    def fetch(self, report_ref):
        obj = self.fetch_with_type(report_ref)
        return obj[0] if obj else None


def network_error(ref: str) -> ExtractionFailure:
    return ExtractionFailure(f"Network error fetching '{ref}'")
