import json
import logging
import re
from dataclasses import dataclass, field

from helpline.errors import ExtractionParseError, ModelRateLimitError
from helpline.gateway import ModelGateway, ModelResponse
from helpline.prompts import extraction_prompt, severity_prompt
from helpline.session import NOT_PROVIDED
from helpline.validation import (
    DEFAULT_SEVERITY,
    HIGH_SEVERITY_KEYWORDS,
    LOW_SEVERITY_KEYWORDS,
    clean_slot,
    detect_role,
    extract_department,
    extract_name,
    match_any_keyword,
    normalize_severity,
)

logger = logging.getLogger(__name__)


@dataclass
class SlotExtractionResult:
    requested: tuple
    slots: dict = field(default_factory=dict)
    source: str = "none"  # model | pattern | verbatim | none

    @property
    def missing_fields(self) -> list[str]:
        return [f for f in self.requested if self.slots.get(f, NOT_PROVIDED) == NOT_PROVIDED]


def parse_extraction(content: str) -> dict:
    """Pull the JSON object out of model output, tolerating chatter around it."""
    if not content:
        raise ExtractionParseError("empty model output")
    json_str = re.sub(r"^[^{]*", "", content.strip())
    json_str = re.sub(r"[^}]*$", "", json_str)
    try:
        data = json.loads(json_str)
    except json.JSONDecodeError as e:
        raise ExtractionParseError(str(e)) from e
    if not isinstance(data, dict):
        raise ExtractionParseError(f"expected object, got {type(data).__name__}")
    return data


def pattern_extract(text: str, fields) -> dict:
    """Regex fallback over the raw utterance when the model output is unusable."""
    found = {}
    for name in fields:
        if name == "name":
            found[name] = extract_name(text)
        elif name == "department":
            found[name] = extract_department(text)
        elif name == "severity":
            has_level = match_any_keyword(text, HIGH_SEVERITY_KEYWORDS | LOW_SEVERITY_KEYWORDS)
            found[name] = normalize_severity(text) if has_level else NOT_PROVIDED
        else:
            found[name] = NOT_PROVIDED
    return found


def _normalize(slots: dict) -> dict:
    normalized = {name: clean_slot(value) for name, value in slots.items()}
    if normalized.get("severity", NOT_PROVIDED) != NOT_PROVIDED:
        normalized["severity"] = normalize_severity(normalized["severity"])
    return normalized


async def extract_slots(
    gateway: ModelGateway,
    text: str,
    fields,
    *,
    model: str | None = None,
    timeout: float | None = None,
) -> tuple[SlotExtractionResult, ModelResponse | None]:
    """Extract the requested fields from one utterance.

    Returns the result together with the model response (for billing), or
    ``None`` when no model call completed.
    """
    fields = tuple(fields)
    result = SlotExtractionResult(requested=fields)
    text = (text or "").strip()
    if not text:
        result.slots = {name: NOT_PROVIDED for name in fields}
        return result, None

    response = None
    try:
        # One caller's words: never served to another call from the cache
        response = await gateway.request(
            extraction_prompt(text, fields), model, timeout, use_cache=False
        )
        data = parse_extraction(response.text)
        result.slots = _normalize({name: data.get(name, NOT_PROVIDED) for name in fields})
        result.source = "model"
    except (ExtractionParseError, ModelRateLimitError) as e:
        logger.warning(f"Structured extraction failed, using pattern fallback: {e}")
        result.slots = _normalize(pattern_extract(text, fields))
        result.source = "pattern"

    # Role is never asked for directly; pick it up whenever the caller mentions it
    role = detect_role(text)
    if role != NOT_PROVIDED:
        result.slots.setdefault("role", role)

    logger.info(f"Extracted ({result.source}): {result.slots}")
    return result, response


def capture_issue(text: str) -> SlotExtractionResult:
    """The issue stage keeps the caller's words as-is."""
    cleaned = (text or "").strip()
    return SlotExtractionResult(
        requested=("issue",),
        slots={"issue": cleaned or NOT_PROVIDED},
        source="verbatim" if cleaned else "none",
    )


async def classify_severity(
    gateway: ModelGateway,
    text: str,
    *,
    use_model: bool = True,
    model: str | None = None,
    timeout: float | None = None,
) -> tuple[SlotExtractionResult, ModelResponse | None]:
    """Classify into High | Medium | Low; ambiguity and degraded requests give Medium."""
    text = (text or "").strip()
    result = SlotExtractionResult(requested=("severity",))
    if not text:
        result.slots = {"severity": NOT_PROVIDED}
        return result, None

    if not use_model:
        result.slots = {"severity": normalize_severity(text)}
        result.source = "pattern"
        return result, None

    response = None
    severity = DEFAULT_SEVERITY
    try:
        response = await gateway.request(severity_prompt(text), model, timeout, use_cache=False)
        if not response.degraded:
            severity = normalize_severity(response.text)
    except ModelRateLimitError as e:
        logger.warning(f"Severity classification rate limited, defaulting: {e}")

    result.slots = {"severity": severity}
    result.source = "model"
    return result, response
