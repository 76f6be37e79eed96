import re

from helpline.session import NOT_PROVIDED


def match_any_keyword(text: str, keywords) -> bool:
    """Check if any keyword appears in text as a whole word (not substring)."""
    lower = text.lower()
    return any(re.search(rf'\b{re.escape(kw)}\b', lower) for kw in keywords)


SENTINEL_VALUES = {
    "not provided", "n/a", "na", "unknown", "none", "null", "tbd",
    "not mentioned", "not specified", "",
}

SEVERITY_LEVELS = ("High", "Medium", "Low")
DEFAULT_SEVERITY = "Medium"

HIGH_SEVERITY_KEYWORDS = {"high", "urgent", "critical", "emergency", "severe", "down for everyone"}
LOW_SEVERITY_KEYWORDS = {"low", "minor", "whenever", "cosmetic"}
NEGATED_URGENCY_KEYWORDS = {"not urgent", "no rush", "not critical", "not an emergency"}

ROLE_PATTERNS = [
    (re.compile(r"doctor|physician|\bmd\b|surgeon|cardiologist", re.IGNORECASE), "Doctor"),
    (re.compile(r"nurse|\brn\b|\blpn\b", re.IGNORECASE), "Nurse"),
    (re.compile(r"admin|administrator|staff", re.IGNORECASE), "Administrator"),
    (re.compile(r"technician|\btech\b|laboratory", re.IGNORECASE), "Technician"),
    (re.compile(r"patient|client", re.IGNORECASE), "Patient"),
]

_NAME_RE = re.compile(r"(?:name is|I am|I'm)\s+([A-Za-z]+)", re.IGNORECASE)
_DEPARTMENT_RE = re.compile(r"(?:department|dept|from)\s+(?:the\s+)?([A-Za-z]+)", re.IGNORECASE)

# Words the name pattern picks up that are never names ("I'm from ...", "I am calling ...")
_NOT_NAMES = {
    "from", "in", "with", "calling", "a", "an", "the", "having", "not",
    "trying", "working", "here", "on", "at", "just", "still", "really",
}
_NOT_DEPARTMENTS = {"the", "a", "an", "my", "our", "is", "of"}


def is_sentinel(value) -> bool:
    if value is None:
        return True
    return str(value).strip().lower() in SENTINEL_VALUES


def clean_slot(value) -> str:
    """Normalize a raw extracted value; sentinel-like values collapse to NOT_PROVIDED."""
    if is_sentinel(value):
        return NOT_PROVIDED
    cleaned = str(value).strip().strip('"').strip()
    # Reject phone numbers and template variables
    if re.match(r"^[\d+\-() ]{7,}$", cleaned) or "{{" in cleaned:
        return NOT_PROVIDED
    return cleaned or NOT_PROVIDED


def extract_name(text: str) -> str:
    for match in _NAME_RE.finditer(text):
        word = match.group(1)
        if word.lower() not in _NOT_NAMES:
            return word.capitalize()
    return NOT_PROVIDED


def extract_department(text: str) -> str:
    for match in _DEPARTMENT_RE.finditer(text):
        word = match.group(1)
        if word.lower() not in _NOT_DEPARTMENTS:
            return word.capitalize()
    return NOT_PROVIDED


def detect_role(text: str) -> str:
    """Quick role detection without a model call."""
    for pattern, role in ROLE_PATTERNS:
        if pattern.search(text):
            return role
    return NOT_PROVIDED


def normalize_severity(text: str) -> str:
    """Map free text (model output or caller speech) onto High | Medium | Low.

    Anything ambiguous lands on the default rather than guessing upward.
    """
    if not text:
        return DEFAULT_SEVERITY
    lower = text.strip().lower()
    if match_any_keyword(lower, NEGATED_URGENCY_KEYWORDS):
        return "Low"
    if match_any_keyword(lower, HIGH_SEVERITY_KEYWORDS):
        return "High"
    if match_any_keyword(lower, LOW_SEVERITY_KEYWORDS):
        return "Low"
    return DEFAULT_SEVERITY


def parse_keywords(raw: str, limit: int = 5) -> list[str]:
    """Split comma-separated model output into at most ``limit`` distinct keywords."""
    if not raw:
        return []
    parts = raw.split(",") if "," in raw else raw.split()
    keywords = []
    for part in parts:
        kw = re.sub(r"^[\s\-\d.)*•]+", "", part).strip().strip('."\'').strip()
        if kw and kw.lower() not in {k.lower() for k in keywords}:
            keywords.append(kw)
        if len(keywords) >= limit:
            break
    return keywords
