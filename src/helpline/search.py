import json
import logging
from dataclasses import dataclass

import httpx

from helpline.circuit_breaker import CircuitBreaker
from helpline.errors import SearchError, SearchTimeout
from helpline.validation import is_sentinel

logger = logging.getLogger(__name__)

DOCUMENT_CLASS = "Documents"
DOCUMENT_FIELDS = ("title", "content", "category", "filename")


@dataclass(frozen=True)
class Document:
    title: str
    content: str
    category: str = ""


def split_terms(query) -> list[str]:
    """Keyword list from a list, a comma-separated string, or plain words."""
    if isinstance(query, (list, tuple)):
        return [t.strip() for t in query if t and t.strip()]
    if not isinstance(query, str):
        return []
    separator = "," if "," in query else None
    return [t.strip() for t in query.split(separator) if t.strip()]


def _like(path: str, value: str) -> str:
    return f"{{path: [{json.dumps(path)}], operator: Like, valueText: {json.dumps(value)}}}"


def build_query(terms: list[str], department: str, limit: int, class_name: str = DOCUMENT_CLASS) -> str:
    """GraphQL ``Get`` that matches ANY tag term, scoped to the department when known."""
    any_tag = "{operator: Or, operands: [" + ", ".join(_like("manual_tags", t) for t in terms) + "]}"
    if is_sentinel(department):
        where = any_tag
    else:
        where = f"{{operator: And, operands: [{_like('category', department)}, {any_tag}]}}"
    fields = " ".join(DOCUMENT_FIELDS)
    return f"{{ Get {{ {class_name}(where: {where}, limit: {limit}) {{ {fields} }} }} }}"


class DocumentSearch:
    """Weaviate document search over the GraphQL endpoint.

    Follows the collaborator convention: failures are logged and turned into
    an empty result. A circuit breaker skips the service for a cooldown after
    repeated failures.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        *,
        limit: int = 10,
        class_name: str = DOCUMENT_CLASS,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
        breaker: CircuitBreaker | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.limit = limit
        self.class_name = class_name
        self._circuit = breaker or CircuitBreaker(
            failure_threshold=3,
            cooldown_seconds=30.0,
            label="document search",
        )
        if client is not None:
            self._client = client
        else:
            headers = {"Content-Type": "application/json"}
            if api_key:
                headers["Authorization"] = f"Bearer {api_key}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=timeout,
            )

    async def close(self):
        await self._client.aclose()

    async def query(self, keywords, department: str) -> list[Document]:
        terms = split_terms(keywords)
        if not terms:
            return []
        if not self._circuit.should_try():
            logger.warning("Search circuit breaker open, returning no documents")
            return []

        gql = build_query(terms, department, self.limit, self.class_name)
        logger.info(f"Searching {self.class_name} dept={department!r} terms={terms}")
        try:
            rows = await self._fetch(gql)
        except SearchError as e:
            self._circuit.record_failure()
            logger.error("Document search failed: %s", e)
            return []

        self._circuit.record_success()
        documents = [
            Document(
                title=row.get("title") or row.get("filename") or "",
                content=row.get("content") or "",
                category=row.get("category") or "",
            )
            for row in rows[: self.limit]
        ]
        logger.info(f"Search returned {len(documents)} documents")
        return documents

    async def _fetch(self, gql: str) -> list[dict]:
        try:
            resp = await self._client.post(f"{self.base_url}/v1/graphql", json={"query": gql})
            resp.raise_for_status()
            body = resp.json()
        except httpx.TimeoutException as e:
            raise SearchTimeout(f"search request timed out: {e}") from e
        except (httpx.HTTPError, ValueError) as e:
            raise SearchError(str(e)) from e

        if not isinstance(body, dict):
            raise SearchError(f"unexpected response body: {type(body).__name__}")
        if body.get("errors"):
            raise SearchError(f"GraphQL errors: {body['errors']}")
        rows = ((body.get("data") or {}).get("Get") or {}).get(self.class_name) or []
        return [row for row in rows if isinstance(row, dict)]
