"""
LLM Client Abstraction Layer
==============================
Swappable backend for the external extraction / inference / impact capability:
  anthropic (default) → Claude messages API, images + PDFs as base64 blocks
  openai              → chat completions with data-URL images / files
  medgemma            → google/medgemma-1.5-4b-it, local, images only

Every response is free text expected to contain one JSON object or array.
Parsing tolerates prose and markdown fences around the JSON; malformed or
absent JSON is an empty result, never an exception.
"""

import base64
import io
import json
import logging
import re
import time

from config import (
    ANTHROPIC_API_KEY, ANTHROPIC_MODEL, LLM_BACKEND, LLM_TIMEOUT_SEC, MAX_TOKENS,
    OPENAI_API_KEY, OPENAI_MODEL, TEMPERATURE,
)
from errors import ConfigurationError, ExtractionFailure

logger = logging.getLogger("body_impact")

SUPPORTED_BACKENDS = ("anthropic", "openai", "medgemma")
IMAGE_MIME_TYPES = ("image/jpeg", "image/png", "image/gif", "image/webp")


# --- StopOnJsonClose: stop generation when the pre-filled JSON value closes ---
class _StopOnJsonClose:
    """Transformers StoppingCriteria: halt when bracket depth returns to 0."""

    def __init__(self, tokenizer, prompt_len: int, opener: str = "{"):
        self.tokenizer = tokenizer
        self.prompt_len = prompt_len
        self.opener = opener
        self.closer = "}" if opener == "{" else "]"

    def __call__(self, input_ids, scores, **kwargs):
        generated = input_ids[0][self.prompt_len:]
        text = self.tokenizer.decode(generated, skip_special_tokens=True)
        # depth=1: the opener is pre-filled in the prompt
        depth = 1
        for ch in text:
            if ch == self.opener:
                depth += 1
            elif ch == self.closer:
                depth -= 1
                if depth == 0:
                    return True
        return False


class _TimeLimitCriteria:
    """Transformers StoppingCriteria: halt generation once wall-clock time exceeds the limit."""

    def __init__(self, max_seconds: float = 120.0):
        self._max_seconds = max_seconds
        self._start_time = time.monotonic()

    def __call__(self, input_ids, scores, **kwargs):
        return (time.monotonic() - self._start_time) >= self._max_seconds


class LLMClient:
    """
    Unified interface to the external capability.
    Construction never fails for a missing key; is_available() reports it
    and the first query raises ConfigurationError.
    """

    # Per-task token budgets for the local model
    STAGE_TOKENS = {
        "document_text": 2048,
        "document_parse": 2048,
        "inference": 512,
        "report_type": 512,
        "impact": 2048,
    }

    def __init__(self, backend: str | None = None):
        self.backend = backend or LLM_BACKEND
        self.client = None
        self.model = None
        if self.backend == "anthropic":
            if ANTHROPIC_API_KEY:
                import anthropic
                self.client = anthropic.Anthropic(
                    api_key=ANTHROPIC_API_KEY, timeout=LLM_TIMEOUT_SEC, max_retries=0,
                )
            else:
                logger.warning("ANTHROPIC_API_KEY not set - LLM client unavailable")
        elif self.backend == "openai":
            if OPENAI_API_KEY:
                import openai
                self.client = openai.OpenAI(
                    api_key=OPENAI_API_KEY, timeout=LLM_TIMEOUT_SEC, max_retries=0,
                )
            else:
                logger.warning("OPENAI_API_KEY not set - LLM client unavailable")
        elif self.backend == "medgemma":
            self._load_medgemma()
        else:
            raise ConfigurationError(f"Unknown backend: {self.backend}")

    def is_available(self) -> bool:
        if self.backend == "medgemma":
            return self.model is not None
        return self.client is not None

    def _require_available(self):
        if not self.is_available():
            raise ConfigurationError(f"LLM backend '{self.backend}' is not configured")

    # ------------------------------------------------------------------
    #  MedGemma initialization
    # ------------------------------------------------------------------
    def _load_medgemma(self):
        import torch
        from transformers import AutoModelForImageTextToText, AutoProcessor, BitsAndBytesConfig

        model_id = "google/medgemma-1.5-4b-it"
        logger.info(f"[MedGemma] Loading {model_id} with 4-bit quantization...")

        bnb_config = BitsAndBytesConfig(
            load_in_4bit=True,
            bnb_4bit_use_double_quant=True,
            bnb_4bit_quant_type="nf4",
            bnb_4bit_compute_dtype=torch.bfloat16,
        )
        self.model = AutoModelForImageTextToText.from_pretrained(
            model_id,
            quantization_config=bnb_config,
            device_map="auto",
            attn_implementation="sdpa",
        )
        self.processor = AutoProcessor.from_pretrained(model_id)
        self.tokenizer = self.processor.tokenizer
        logger.info("[MedGemma] Ready.")

    @staticmethod
    def _detect_stage(system_prompt: str) -> str:
        sp = system_prompt.lower()
        if "transcribe" in sp:
            return "document_text"
        if "structure the extracted report text" in sp:
            return "document_parse"
        if "test panels" in sp:
            return "report_type"
        if "abnormal laboratory" in sp:
            return "inference"
        if "affectedbodyparts" in sp:
            return "impact"
        return "default"

    # ------------------------------------------------------------------
    #  JSON extraction / repair utilities
    # ------------------------------------------------------------------
    @staticmethod
    def _strip_fences(text: str) -> str:
        text = text.strip()
        if text.startswith("```json"):
            text = text[7:]
        if text.startswith("```"):
            text = text[3:]
        if text.endswith("```"):
            text = text[:-3]
        return text.strip()

    @staticmethod
    def _repair_json(text: str) -> str:
        """Best-effort repair of common model JSON issues."""
        s = text
        # Control characters (except \n \r \t) break json.loads
        s = re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f]', '', s)
        # JavaScript-style // comments, outside of URLs
        s = re.sub(r'(?<!:)//[^\n]*', '', s)
        # Invalid backslash escapes
        s = re.sub(r'\\(?!["\\/bfnrtu])', '', s)
        # Trailing commas before } or ]
        s = re.sub(r",\s*([}\]])", r"\1", s)
        # Single-quoted keys/values → double-quoted
        s = re.sub(r"(?<=[\{,\[])\s*'([^']+?)'\s*:", r' "\1":', s)
        s = re.sub(r":\s*'([^']*?)'\s*(?=[,\}\]])", r': "\1"', s)
        s = re.sub(r"(?<=[\[,])\s*'([^']*?)'\s*(?=[,\]])", r' "\1"', s)
        return s

    @staticmethod
    def _unwrap_list(parsed):
        """If the model returned a JSON array of objects, unwrap the first one."""
        if isinstance(parsed, list) and len(parsed) > 0 and isinstance(parsed[0], dict):
            return parsed[0]
        return parsed

    @staticmethod
    def _extract_balanced(text: str, opener: str, closer: str) -> str | None:
        """First balanced opener...closer span, ignoring brackets inside strings."""
        start = text.find(opener)
        while start != -1:
            depth = 0
            in_string = False
            escaped = False
            for i in range(start, len(text)):
                ch = text[i]
                if in_string:
                    if escaped:
                        escaped = False
                    elif ch == "\\":
                        escaped = True
                    elif ch == '"':
                        in_string = False
                    continue
                if ch == '"':
                    in_string = True
                elif ch == opener:
                    depth += 1
                elif ch == closer:
                    depth -= 1
                    if depth == 0:
                        return text[start:i + 1]
            # Unclosed from this opener; try the next one
            start = text.find(opener, start + 1)
        return None

    @classmethod
    def extract_json_object(cls, text: str) -> str | None:
        return cls._extract_balanced(text or "", "{", "}")

    @classmethod
    def extract_json_array(cls, text: str) -> str | None:
        return cls._extract_balanced(text or "", "[", "]")

    @classmethod
    def _loads(cls, candidate: str | None):
        if candidate is None:
            return None
        for attempt in (candidate, cls._repair_json(candidate)):
            try:
                return json.loads(attempt, strict=False)
            except json.JSONDecodeError:
                continue
        return None

    @classmethod
    def parse_json_object(cls, text: str) -> dict | None:
        """Parse the first JSON object in a free-text response, or None."""
        if not text:
            return None
        stripped = cls._strip_fences(text)
        parsed = cls._unwrap_list(cls._loads(stripped))
        if isinstance(parsed, dict):
            return parsed
        parsed = cls._unwrap_list(cls._loads(cls.extract_json_object(stripped)))
        return parsed if isinstance(parsed, dict) else None

    @classmethod
    def parse_json_array(cls, text: str) -> list | None:
        """Parse the first JSON array in a free-text response, or None."""
        if not text:
            return None
        stripped = cls._strip_fences(text)
        parsed = cls._loads(stripped)
        if isinstance(parsed, list):
            return parsed
        parsed = cls._loads(cls.extract_json_array(stripped))
        return parsed if isinstance(parsed, list) else None

    # ------------------------------------------------------------------
    #  Core MedGemma generation
    # ------------------------------------------------------------------
    GENERATE_TIME_LIMIT = 120.0

    def _generate_medgemma(self, system_prompt: str, user_message: str,
                           max_new_tokens: int, temperature: float,
                           image=None, prefill: str | None = None) -> str:
        import torch
        from transformers import StoppingCriteriaList

        user_content = [{"type": "text", "text": user_message}]
        if image is not None:
            user_content.append({"type": "image", "image": image})
        messages = [
            {"role": "system", "content": [{"type": "text", "text": system_prompt}]},
            {"role": "user", "content": user_content},
        ]

        if image is not None:
            inputs = self.processor.apply_chat_template(
                messages, add_generation_prompt=True, tokenize=True,
                return_dict=True, return_tensors="pt",
            ).to(self.model.device, dtype=torch.bfloat16)
            prefill = None
        else:
            text = self.processor.apply_chat_template(
                messages, tokenize=False, add_generation_prompt=True
            )
            if prefill:
                text += prefill
            inputs = self.tokenizer(text, return_tensors="pt").to(self.model.device)
        prompt_len = inputs["input_ids"].shape[-1]

        gen_kwargs = {
            "max_new_tokens": max_new_tokens,
            "pad_token_id": self.tokenizer.eos_token_id,
            "do_sample": temperature > 0,
            "repetition_penalty": 1.1,
        }
        if temperature > 0:
            gen_kwargs["temperature"] = temperature

        criteria = [_TimeLimitCriteria(max_seconds=self.GENERATE_TIME_LIMIT)]
        if prefill:
            criteria.append(_StopOnJsonClose(self.tokenizer, prompt_len, prefill))
        gen_kwargs["stopping_criteria"] = StoppingCriteriaList(criteria)

        t0 = time.monotonic()
        with torch.no_grad():
            output = self.model.generate(**inputs, **gen_kwargs)
        elapsed = time.monotonic() - t0

        result = self.tokenizer.decode(output[0][prompt_len:], skip_special_tokens=True)
        if prefill:
            result = prefill + result

        del inputs, output
        torch.cuda.empty_cache()

        if elapsed >= self.GENERATE_TIME_LIMIT - 1.0:
            raise TimeoutError(
                f"MedGemma generation exceeded {self.GENERATE_TIME_LIMIT}s "
                f"(actual: {elapsed:.1f}s). Partial output discarded."
            )
        return result.strip()

    # ------------------------------------------------------------------
    #  Public API: query()
    # ------------------------------------------------------------------
    def query(self, system_prompt: str, user_message: str, temperature: float = None,
              max_tokens: int = None, prefill: str | None = None) -> str:
        """Send a text-only query and return the text response."""
        self._require_available()
        temp = temperature if temperature is not None else TEMPERATURE
        tokens = max_tokens or MAX_TOKENS

        if self.backend == "anthropic":
            response = self.client.messages.create(
                model=ANTHROPIC_MODEL,
                max_tokens=tokens,
                temperature=temp,
                system=system_prompt,
                messages=[{"role": "user", "content": user_message}],
            )
            return response.content[0].text

        if self.backend == "openai":
            response = self.client.chat.completions.create(
                model=OPENAI_MODEL,
                max_tokens=tokens,
                temperature=temp,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_message},
                ],
            )
            return response.choices[0].message.content or ""

        stage = self._detect_stage(system_prompt)
        return self._generate_medgemma(
            system_prompt, user_message, self.STAGE_TOKENS.get(stage, 1024), temp,
            prefill=prefill,
        )

    # ------------------------------------------------------------------
    #  Public API: query_with_file(): image or PDF payload
    # ------------------------------------------------------------------
    def query_with_file(self, system_prompt: str, instruction: str, data: bytes,
                        mime_type: str, temperature: float = None,
                        max_tokens: int = None) -> str:
        """Send an instruction plus one image/PDF payload, return the text response."""
        self._require_available()
        temp = temperature if temperature is not None else TEMPERATURE
        tokens = max_tokens or MAX_TOKENS
        is_pdf = mime_type == "application/pdf"
        if not is_pdf and mime_type not in IMAGE_MIME_TYPES:
            raise ExtractionFailure(f"Unsupported file type for extraction: {mime_type}")
        encoded = base64.standard_b64encode(data).decode("ascii")

        if self.backend == "anthropic":
            block_type = "document" if is_pdf else "image"
            response = self.client.messages.create(
                model=ANTHROPIC_MODEL,
                max_tokens=tokens,
                temperature=temp,
                system=system_prompt,
                messages=[{
                    "role": "user",
                    "content": [
                        {"type": block_type,
                         "source": {"type": "base64", "media_type": mime_type, "data": encoded}},
                        {"type": "text", "text": instruction},
                    ],
                }],
            )
            return response.content[0].text

        data_url = f"data:{mime_type};base64,{encoded}"
        if self.backend == "openai":
            if is_pdf:
                file_part = {"type": "file", "file": {"filename": "report.pdf", "file_data": data_url}}
            else:
                file_part = {"type": "image_url", "image_url": {"url": data_url, "detail": "high"}}
            response = self.client.chat.completions.create(
                model=OPENAI_MODEL,
                max_tokens=tokens,
                temperature=temp,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": [{"type": "text", "text": instruction}, file_part]},
                ],
            )
            return response.choices[0].message.content or ""

        if is_pdf:
            raise ExtractionFailure("MedGemma backend cannot read PDF reports")
        from PIL import Image
        image = Image.open(io.BytesIO(data)).convert("RGB")
        return self._generate_medgemma(
            system_prompt, instruction, self.STAGE_TOKENS["document_text"], temp, image=image
        )

    # ------------------------------------------------------------------
    #  Public API: query_json() / query_json_array()
    # ------------------------------------------------------------------
    def query_json(self, system_prompt: str, user_message: str, temperature: float = None,
                   max_tokens: int = None) -> dict:
        """Send a query and parse the first JSON object of the response.

        Returns an empty dict when the response holds no parseable object
        (callers handle {} via .get() defaults). Capability errors propagate.
        """
        raw = self.query(system_prompt, user_message, temperature, max_tokens, prefill="{")
        parsed = self.parse_json_object(raw)
        if parsed is None:
            logger.warning(f"query_json: no parseable JSON object. Raw[:200]: {raw[:200]}")
            return {}
        return parsed

    def query_json_array(self, system_prompt: str, user_message: str,
                         temperature: float = None, max_tokens: int = None) -> list | None:
        """Send a query and parse the first JSON array of the response, or None."""
        raw = self.query(system_prompt, user_message, temperature, max_tokens, prefill="[")
        parsed = self.parse_json_array(raw)
        if parsed is None:
            logger.warning(f"query_json_array: no parseable JSON array. Raw[:200]: {raw[:200]}")
        return parsed
