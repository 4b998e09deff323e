import re
from difflib import SequenceMatcher
from typing import Awaitable, Callable

import structlog

from lms_assistant.agents.tools import LmsRecord
from lms_assistant.errors import EntityResolutionError

logger = structlog.get_logger("resolver")

SEARCH_METHODS = {
    "user": "search_users",
    "course": "search_courses",
    "learning_plan": "search_learning_plans",
    "session": "search_sessions",
    "group": "search_groups",
}
SELF_REFERENCES = frozenset({"me", "myself", "i"})
NOISE_TOKENS = frozenset(
    {"the", "a", "an", "in", "of", "for", "course", "courses", "training", "class", "plan", "session", "group", "team"}
)

Search = Callable[[str, str, int], Awaitable[list[LmsRecord]]]


def _tokens(text: str) -> set[str]:
    tokens = set(re.findall(r"\w+", text.lower()))
    meaningful = tokens - NOISE_TOKENS
    return meaningful or tokens


def similarity(reference: str, candidate: str) -> float:
    """Best of edit similarity and token overlap, in [0, 1]."""
    if not reference or not candidate:
        return 0.0
    left, right = reference.lower().strip(), candidate.lower().strip()
    edit = SequenceMatcher(None, left, right).ratio()
    ref_tokens, cand_tokens = _tokens(left), _tokens(right)
    if not ref_tokens or not cand_tokens:
        return edit
    overlap = len(ref_tokens & cand_tokens) / min(len(ref_tokens), len(cand_tokens))
    return max(edit, overlap)


def _candidate(record: LmsRecord) -> dict:
    return {"id": record.id, "name": record.name, "email": record.email}


class EntityResolver:
    """Turns user-supplied references into LMS ids.

    Precedence: numeric id, then exact email/name/code (case-insensitive),
    then fuzzy similarity at or above the threshold. Ambiguity never picks a
    winner; it raises EntityResolutionError carrying the candidates.
    With `exact_only` a lone fuzzy winner is returned as a suggestion instead
    of being used.
    """

    def __init__(self, threshold: float = 0.75, tie_margin: float = 0.05, candidate_limit: int = 5) -> None:
        self.threshold = threshold
        self.tie_margin = tie_margin
        self.candidate_limit = candidate_limit

    def match(self, kind: str, reference: str, records: list[LmsRecord], exact_only: bool = False) -> LmsRecord:
        wanted = reference.strip().lower()

        if wanted.isdigit():
            by_id = [record for record in records if record.id == wanted]
            if by_id:
                return by_id[0]

        exact = {
            record.id: record
            for record in records
            if wanted in {(record.email or "").lower(), record.name.lower(), (record.code or "").lower()}
        }
        if len(exact) == 1:
            return next(iter(exact.values()))
        if len(exact) > 1:
            raise EntityResolutionError(kind, reference, [_candidate(r) for r in exact.values()])

        scored = sorted(
            (
                (max(similarity(wanted, record.name), similarity(wanted, record.code or "")), record)
                for record in records
            ),
            key=lambda pair: pair[0],
            reverse=True,
        )
        above = [(score, record) for score, record in scored if score >= self.threshold]
        if not above:
            raise EntityResolutionError(kind, reference)
        best = above[0][0]
        tied = [record for score, record in above if best - score <= self.tie_margin]
        if len(tied) > 1:
            raise EntityResolutionError(kind, reference, [_candidate(r) for r in tied[: self.candidate_limit]])
        if exact_only:
            raise EntityResolutionError(kind, reference, [_candidate(above[0][1])], suggestion=True)
        return above[0][1]

    async def resolve(
        self, kind: str, reference: str, search: Search, user_id: str | None = None, exact_only: bool = False
    ) -> str:
        if kind == "user" and reference.strip().lower() in SELF_REFERENCES:
            if user_id:
                return user_id
            raise EntityResolutionError(kind, reference)
        records = await search(SEARCH_METHODS[kind], reference, self.candidate_limit)
        record = self.match(kind, reference, records, exact_only)
        logger.debug("entity_resolved", kind=kind, record_id=record.id)
        return record.id

    async def resolve_all(
        self,
        kind: str,
        references: list[str],
        search: Search,
        user_id: str | None = None,
        exact_only: bool = False,
    ) -> list[str]:
        resolved: list[str] = []
        for reference in references:
            record_id = await self.resolve(kind, reference, search, user_id, exact_only)
            if record_id not in resolved:
                resolved.append(record_id)
        return resolved
