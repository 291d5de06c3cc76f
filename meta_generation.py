#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Meta title / description generation against the OpenAI chat completions API.

One call per batch of products (or per single product on regenerate). Every
failure is classified as either QuotaExceeded or GenerationFailed; the client
itself never retries.
"""

import re
import json
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union
from openai import AsyncOpenAI

from product_records import BILINGUAL_COLUMNS, ENGLISH_COLUMNS, KEY_FIELD, Record, ProcessedRecord, strip_generated
from seo_utils import get_logger, truncate_chars

logger = get_logger("generation")

DEFAULT_MODEL = "gpt-4o-mini"
BATCH_TEMPERATURE = 0.3
REGENERATE_TEMPERATURE = 0.75
DISALLOW_TEMP = {"gpt-5-mini", "gpt-5-nano"}

# ---------- Sentinels ----------
NO_RESPONSE_TITLE = "Error: No AI Response"
NO_RESPONSE_DESCRIPTION = "The AI did not provide a response for this item."
REGENERATE_FAILED_TITLE = "Error: Regeneration failed"
REGENERATE_FAILED_DESCRIPTION = "Please try again or edit manually."

# ---------- Errors ----------
class GenerationError(Exception):
    """A call to the text service did not produce usable output."""

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail

class QuotaExceeded(GenerationError):
    """The service refused the call because a usage quota is exhausted."""

class GenerationFailed(GenerationError):
    """Any other failure, including responses that do not match the schema."""

# ---------- Output Profiles ----------
@dataclass(frozen=True)
class OutputProfile:
    """Which generated columns exist and which response keys fill them."""
    name: str
    columns: Tuple[str, ...]
    response_keys: Tuple[str, ...]

    @property
    def title_columns(self) -> Tuple[str, ...]:
        return tuple(c for c in self.columns if c.startswith("Meta Title"))

    def sentinel(self, title: str, description: str) -> Dict[str, str]:
        """Generated fields all set to a fixed error placeholder."""
        return {c: (title if c in self.title_columns else description) for c in self.columns}

    def to_columns(self, item: Mapping[str, Any]) -> Dict[str, str]:
        return {col: str(item[key]) for col, key in zip(self.columns, self.response_keys)}

BILINGUAL = OutputProfile(
    "bilingual", BILINGUAL_COLUMNS,
    ("metaTitleEN", "metaDescriptionEN", "metaTitleAR", "metaDescriptionAR"))
ENGLISH_ONLY = OutputProfile("english", ENGLISH_COLUMNS, ("metaTitle", "metaDescription"))

# ---------- Default Instructions ----------
DEFAULT_AI_INSTRUCTIONS = """You are an e-commerce SEO specialist and copywriter for a fashion and home goods store.

Write SEO meta titles and meta descriptions for every product you are given, in English and in Arabic.

Rules:
1. Produce metaTitleEN, metaDescriptionEN, metaTitleAR and metaDescriptionAR for each product.
2. Use the English columns (name, description, color, ...) for the English fields and the Arabic columns (name_ar, description_ar, ...) for the Arabic fields.
3. Arabic text contains Arabic letters, numbers and punctuation only. No Latin letters.
4. If a language has no source data, return "Error: Insufficient data for generation" for that language's fields instead of translating.
5. Never put the sku or long product codes in the meta content. The sku is only for matching.
6. Return exactly one object per input product. The output must have the same number of items as the product list.

Meta titles: complete and appealing, at most 60 characters, ending with the store name.
Meta descriptions: persuasive and complete, at most 160 characters, mentioning product details and the store name.

The "sku" in each output object must match the input "sku" exactly."""

DEFAULT_EN_INSTRUCTIONS = """You are an e-commerce SEO specialist and copywriter.

Write an SEO meta title (at most 60 characters) and meta description (at most 160 characters) in English for every product you are given.
Never put the sku in the meta content. Return exactly one object per input product, with the "sku" copied exactly from the input."""

def default_instructions(profile: OutputProfile = BILINGUAL) -> str:
    return DEFAULT_AI_INSTRUCTIONS if profile is BILINGUAL else DEFAULT_EN_INSTRUCTIONS

BATCH_TEMPLATE = """\
Generate the meta fields for EACH product in the following JSON list.
Return ONLY valid JSON of the form {{"results": [...]}} where every item has the keys: {keys}.

Product List:
{products}
"""

SINGLE_TEMPLATE = """\
Generate a new meta title and a new meta description for the following product.
Return ONLY a valid JSON object with the keys: {keys}.

Product Details:
{product}
"""

# ---------- JSON Schema ----------
def _item_schema(profile: OutputProfile) -> Dict[str, Any]:
    keys = (KEY_FIELD,) + profile.response_keys
    return {
        "type": "object",
        "additionalProperties": False,
        "properties": {k: {"type": "string"} for k in keys},
        "required": list(keys),
    }

def batch_response_format(profile: OutputProfile) -> Dict[str, Any]:
    return {
        "type": "json_schema",
        "json_schema": {
            "name": f"MetaBatch_{profile.name}",
            "strict": True,
            "schema": {
                "type": "object",
                "additionalProperties": False,
                "properties": {"results": {"type": "array", "items": _item_schema(profile)}},
                "required": ["results"],
            },
        },
    }

def single_response_format(profile: OutputProfile) -> Dict[str, Any]:
    return {
        "type": "json_schema",
        "json_schema": {"name": f"MetaSingle_{profile.name}", "strict": True, "schema": _item_schema(profile)},
    }

# ---------- Helpers ----------
def extract_json(s: str) -> str:
    """Extract the outermost JSON object or array from a string."""
    m = re.search(r"[\[{].*[\]}]", s, flags=re.DOTALL)
    if not m:
        raise ValueError("No JSON object found in model output.")
    return m.group(0)

def is_schema_unsupported(exc: Exception) -> bool:
    """Check if exception is due to unsupported schema."""
    s = str(exc).lower()
    return ("response_format" in s and ("unsupported" in s or "not supported" in s))

def estimate_tokens(records: Sequence[Record], instructions: str) -> int:
    """Rough token estimate for a job: about four characters per token."""
    payload = json.dumps([r.to_dict() for r in records], ensure_ascii=False, separators=(",", ":"))
    return math.ceil((len(payload) + len(instructions)) / 4)

def classify_error(exc: BaseException) -> Tuple[bool, str]:
    """Return (is_quota, human readable detail) for an exception from the service."""
    detail = getattr(exc, "message", None) or str(exc) or exc.__class__.__name__
    quota = False

    try:
        parsed = json.loads(detail)
    except (TypeError, ValueError):
        parsed = None
    if isinstance(parsed, dict) and isinstance(parsed.get("error"), dict):
        err = parsed["error"]
        detail = err.get("message") or detail
        if err.get("status") == "RESOURCE_EXHAUSTED" or err.get("code") == "insufficient_quota":
            quota = True

    if getattr(exc, "status_code", None) == 429 or getattr(exc, "code", None) == "insufficient_quota":
        quota = True
    lowered = detail.lower()
    if "resource_exhausted" in lowered or "quota" in lowered:
        quota = True
    return quota, detail

def _validate_item(item: Any, profile: OutputProfile) -> Mapping[str, Any]:
    if not isinstance(item, dict):
        raise GenerationFailed("API response item was not a JSON object.")
    for key in (KEY_FIELD,) + profile.response_keys:
        if not isinstance(item.get(key), str):
            raise GenerationFailed(f"API response item is missing the required field '{key}'.")
    return item

@dataclass
class BatchOutcome:
    results: Dict[str, Dict[str, str]]
    tokens_used: int

@dataclass
class SingleOutcome:
    result: Dict[str, str]
    tokens_used: int

# ---------- Generator ----------
class MetaGenerator:
    """Wraps the chat completions API into a batch / single call contract."""

    def __init__(self, api_key: str = "", model: str = DEFAULT_MODEL,
                 timeout: float = 60.0,
                 profile: OutputProfile = BILINGUAL,
                 use_schema: bool = True,
                 client: Optional[Any] = None):
        self.client = client or AsyncOpenAI(api_key=api_key, timeout=timeout, max_retries=0)
        self.model = model
        self.profile = profile
        self.use_schema = use_schema
        self._send_temp = model not in DISALLOW_TEMP
        if not self._send_temp:
            logger.info(f"Model '{model}' ignores explicit temperature; using provider default.")

    async def _create(self, *, messages, temperature: float, response_format=None):
        kwargs = dict(model=self.model, messages=messages)
        if response_format is not None:
            kwargs["response_format"] = response_format
        if self._send_temp:
            kwargs["temperature"] = temperature
        return await self.client.chat.completions.create(**kwargs)

    async def _complete(self, messages: List[Dict[str, str]], temperature: float,
                        schema: Dict[str, Any]) -> Tuple[Any, int]:
        """Run one completion and return (parsed JSON, tokens used)."""
        resp = None
        if self.use_schema:
            try:
                resp = await self._create(messages=messages, temperature=temperature, response_format=schema)
            except Exception as e:
                if not is_schema_unsupported(e):
                    raise
                logger.info("Structured output unsupported by model; falling back to json_object.")
        if resp is None:
            resp = await self._create(messages=messages, temperature=temperature,
                                      response_format={"type": "json_object"})

        usage = getattr(resp, "usage", None)
        tokens = int(getattr(usage, "total_tokens", 0) or 0)
        content = (resp.choices[0].message.content or "").strip()
        try:
            return json.loads(content), tokens
        except ValueError:
            pass
        try:
            return json.loads(extract_json(content)), tokens
        except ValueError as e:
            raise GenerationFailed(f"API response was not valid JSON: {truncate_chars(content, 200)}") from e

    def _messages(self, instructions: str, user: str) -> List[Dict[str, str]]:
        return [
            {"role": "system", "content": instructions},
            {"role": "user", "content": user},
        ]

    def _raise_classified(self, exc: Exception, context: str) -> None:
        if isinstance(exc, GenerationFailed):
            raise GenerationFailed(f"{context} {exc.detail}") from exc
        quota, detail = classify_error(exc)
        if quota:
            raise QuotaExceeded(detail) from exc
        raise GenerationFailed(f"{context} {detail}") from exc

    async def generate_batch(self, records: Sequence[Record], instructions: str) -> BatchOutcome:
        """
        Generate meta fields for a batch.

        The outcome always has exactly one result per distinct input key. Keys the
        service left out get the "no AI response" sentinel.
        """
        payload = [strip_generated(r) for r in records]
        user = BATCH_TEMPLATE.format(
            keys=", ".join((KEY_FIELD,) + self.profile.response_keys),
            products=json.dumps(payload, ensure_ascii=False, indent=2))
        try:
            parsed, tokens = await self._complete(
                self._messages(instructions, user), BATCH_TEMPERATURE, batch_response_format(self.profile))
            items = parsed.get("results") if isinstance(parsed, dict) else parsed
            if not isinstance(items, list):
                raise GenerationFailed("API response was not a JSON array as expected.")
            returned = {}
            for item in items:
                item = _validate_item(item, self.profile)
                returned[item[KEY_FIELD]] = self.profile.to_columns(item)
        except Exception as e:
            logger.error(f"Error generating content for batch of {len(records)}: {e}")
            self._raise_classified(e, "Failed to generate meta content for a batch of products.")

        results: Dict[str, Dict[str, str]] = {}
        for r in records:
            found = returned.get(r.key)
            if found is None:
                logger.warning(f"[{r.key}] no result in AI response")
                found = self.profile.sentinel(NO_RESPONSE_TITLE, NO_RESPONSE_DESCRIPTION)
            results[r.key] = found
        return BatchOutcome(results, tokens)

    async def generate_one(self, record: Union[Record, ProcessedRecord], instructions: str) -> SingleOutcome:
        """Generate fresh meta fields for one product."""
        payload = strip_generated(record)
        user = SINGLE_TEMPLATE.format(
            keys=", ".join((KEY_FIELD,) + self.profile.response_keys),
            product=json.dumps(payload, ensure_ascii=False, indent=2))
        try:
            parsed, tokens = await self._complete(
                self._messages(instructions, user), REGENERATE_TEMPERATURE, single_response_format(self.profile))
            if isinstance(parsed, list) and len(parsed) == 1:
                parsed = parsed[0]
            item = _validate_item(parsed, self.profile)
        except Exception as e:
            logger.error(f"Error generating content for single product SKU {record.key}: {e}")
            self._raise_classified(e, f"Failed to generate meta content for product SKU {record.key}.")
        return SingleOutcome(self.profile.to_columns(item), tokens)
