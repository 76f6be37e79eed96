"""Prompt templates for every model request the help desk makes.

Keyword prompts are cached on their first ``CACHE_PREFIX_CHARS`` characters,
so the issue text comes first. Extraction and severity prompts carry one
caller's words and bypass the cache; answer prompts are cached on the whole
prompt.
"""

from helpline.session import NOT_PROVIDED

ASSISTANT_PERSONA = """You are the automated support assistant for the Clinical Help Desk.
Your answer will be read aloud over the phone.
- Plain sentences only: no lists, no markdown, no URLs.
- At most three short sentences.
- Never invent steps, settings, phone numbers, or policies."""


def extraction_prompt(text: str, fields) -> str:
    field_list = ", ".join(fields)
    return (
        f'Fields: {field_list}. Caller said: "{text}"\n'
        f"Extract the {field_list} from what the caller said. "
        f"Return ONLY a JSON object with exactly these keys: {field_list}. "
        f'If any field is not mentioned, set it to "{NOT_PROVIDED}". '
        "For severity use one of High, Medium, Low. "
        "Do not guess or fabricate values."
    )


def severity_prompt(text: str) -> str:
    return (
        f'Issue severity: "{text}"\n'
        'Classify the severity of this issue as either "High", "Medium", or "Low". '
        "Return only the severity level as a single word."
    )


def keyword_prompt(issue: str, limit: int = 5) -> str:
    return (
        f'Issue: "{issue}"\n'
        f"List at most {limit} search keywords that summarize this help desk issue. "
        "Return them as a single comma-separated line with no other text."
    )


def _caller_line(caller: dict) -> str:
    name = caller.get("name", NOT_PROVIDED)
    role = caller.get("role", NOT_PROVIDED)
    department = caller.get("department", NOT_PROVIDED)
    parts = []
    if name != NOT_PROVIDED:
        parts.append(f"The caller is {name}")
    else:
        parts.append("The caller")
    if role != NOT_PROVIDED:
        parts.append(f"a {role}")
    if department != NOT_PROVIDED:
        parts.append(f"from {department}")
    return ", ".join(parts) + "."


def grounded_answer_prompt(
    issue: str,
    department: str,
    documents,
    *,
    caller: dict | None = None,
    original_issue: str = "",
    truncated: bool = False,
) -> str:
    caller = caller or {}
    sections = [
        f'Department: {department}. Question: "{issue}"',
        _caller_line(caller),
    ]
    if original_issue and original_issue != NOT_PROVIDED and original_issue != issue:
        sections.append(f'Their original issue was: "{original_issue}".')
    sections.append(ASSISTANT_PERSONA)

    sections.append(
        "Answer the question using ONLY the reference documents below. "
        "If the documents do not contain the answer, say you could not find it "
        "and ask the caller to rephrase or give more detail."
    )
    if truncated:
        sections.append(
            "Note: only part of the retrieved material fits here; some documents were left out."
        )

    docs = []
    for i, doc in enumerate(documents, start=1):
        docs.append(f"[Document {i}] {doc.title}\n{doc.content}")
    sections.append("REFERENCE DOCUMENTS\n" + "\n\n".join(docs))
    return "\n\n".join(sections)
