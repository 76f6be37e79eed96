"""Retrieval-augmented answers for the streaming phase.

keywords (model) -> department-scoped document search (timeout-raced)
-> greedy context budget -> grounded answer (model).
"""

import asyncio
import logging
import math
import re
from dataclasses import dataclass, field, replace

from helpline.gateway import ModelGateway
from helpline.ledger import ANSWER_GENERATION, KEYWORD_EXTRACTION, CostLedger
from helpline.prompts import grounded_answer_prompt, keyword_prompt
from helpline.search import Document, DocumentSearch
from helpline.validation import parse_keywords

logger = logging.getLogger(__name__)

CLARIFICATION_TEXT = (
    "I couldn't find anything about that in our help desk documents. "
    "Could you rephrase your question or give me a few more details?"
)
CHARS_PER_TOKEN = 4
MAX_KEYWORDS = 5

_STOPWORDS = frozenset({
    "the", "and", "for", "with", "that", "this", "have", "from", "what", "when",
    "where", "which", "there", "their", "about", "would", "could", "should",
    "my", "is", "it", "to", "of", "in", "on", "a", "an", "i", "me", "can",
    "not", "does", "doesn't", "isn't", "won't", "can't", "help", "please",
})


@dataclass
class RetrievalResult:
    text: str
    keywords: list = field(default_factory=list)
    documents: list = field(default_factory=list)
    truncated: bool = False
    degraded: bool = False
    clarified: bool = False


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text or "") / CHARS_PER_TOKEN)


def budget_documents(documents: list[Document], budget: int) -> tuple[list[Document], bool]:
    """Take documents in order while the running token estimate stays within ``budget``.

    If even the first document does not fit, a clipped slice of it is used so
    the answer still has something to stand on.
    """
    included = []
    used = 0
    for doc in documents:
        cost = estimate_tokens(doc.title) + estimate_tokens(doc.content)
        if used + cost > budget:
            if not included:
                room = max(budget - estimate_tokens(doc.title), 0) * CHARS_PER_TOKEN
                included.append(replace(doc, content=doc.content[:room]))
            return included, True
        included.append(doc)
        used += cost
    return included, False


def fallback_keywords(issue: str, limit: int = MAX_KEYWORDS) -> list[str]:
    """Content words of the issue itself, for when keyword extraction degrades."""
    words = []
    for word in re.findall(r"[A-Za-z][A-Za-z'\-]+", issue or ""):
        lower = word.lower()
        if len(lower) > 2 and lower not in _STOPWORDS and lower not in words:
            words.append(lower)
        if len(words) >= limit:
            break
    return words


class RetrievalPipeline:
    def __init__(
        self,
        gateway: ModelGateway,
        search: DocumentSearch,
        ledger: CostLedger,
        store=None,
        *,
        search_timeout: float = 3.0,
        context_token_budget: int = 3000,
        model: str | None = None,
    ):
        self.gateway = gateway
        self.search = search
        self.ledger = ledger
        self.store = store
        self.search_timeout = search_timeout
        self.context_token_budget = context_token_budget
        self.model = model

    async def extract_keywords(self, call_id: str, issue: str) -> list[str]:
        response = await self.gateway.request(keyword_prompt(issue, MAX_KEYWORDS), self.model)
        self.ledger.record_model_usage(call_id, KEYWORD_EXTRACTION, response, detail=issue[:200])
        keywords = [] if response.degraded else parse_keywords(response.text, MAX_KEYWORDS)
        if not keywords:
            keywords = fallback_keywords(issue)
            logger.warning(f"[{call_id}] keyword extraction unusable, using issue words {keywords}")
        return keywords

    async def search_documents(self, keywords: list[str], department: str) -> list[Document]:
        try:
            return await asyncio.wait_for(self.search.query(keywords, department), self.search_timeout)
        except asyncio.TimeoutError:
            logger.warning("Document search timed out after %.1fs, treating as no results", self.search_timeout)
            return []

    async def answer(
        self,
        call_id: str,
        issue: str,
        department: str,
        caller: dict | None = None,
        original_issue: str = "",
    ) -> RetrievalResult:
        keywords = await self.extract_keywords(call_id, issue)
        documents = await self.search_documents(keywords, department)

        if self.store is not None:
            self.store.spawn(
                self.store.insert_search_log(call_id, department, keywords, len(documents)),
                "Search log insert",
            )

        if not documents:
            logger.info(f"[{call_id}] no documents for {keywords}, asking caller to clarify")
            return RetrievalResult(text=CLARIFICATION_TEXT, keywords=keywords, clarified=True)

        included, truncated = budget_documents(documents, self.context_token_budget)
        if truncated:
            logger.info(
                f"[{call_id}] context budget reached: {len(included)}/{len(documents)} documents used"
            )

        prompt = grounded_answer_prompt(
            issue,
            department,
            included,
            caller=caller,
            original_issue=original_issue,
            truncated=truncated,
        )
        # Carries the caller's identity, so only an identical prompt may hit
        response = await self.gateway.request(prompt, self.model, cache_whole_prompt=True)
        self.ledger.record_model_usage(call_id, ANSWER_GENERATION, response, detail=issue[:200])

        return RetrievalResult(
            text=response.text,
            keywords=keywords,
            documents=included,
            truncated=truncated,
            degraded=response.degraded,
        )
