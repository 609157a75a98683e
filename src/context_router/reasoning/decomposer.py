"""Breaks multi-part queries into dependency-ordered sub-queries."""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass
from graphlib import CycleError, TopologicalSorter

from langchain_core.prompts import ChatPromptTemplate
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from context_router.cancellation import CancellationToken
from context_router.config import DecomposerOptions, coerce_options
from context_router.errors import DecompositionFailure, InferenceError, InvalidInputError
from context_router.inference import InferenceClient
from context_router.obs.tracing import tokenize_terms
from context_router.types import DecompositionResult, ExecutionStrategy, SubQuery

logger = logging.getLogger(__name__)

ACTION_VERBS = frozenset(
    {
        "add", "analyze", "build", "check", "clean", "compare", "configure", "continue",
        "create", "debug", "define", "delete", "deploy", "describe", "design", "document",
        "explain", "find", "fix", "generate", "implement", "install", "integrate",
        "investigate", "list", "migrate", "optimize", "refactor", "remove", "rename",
        "review", "run", "set", "setup", "show", "test", "trace", "update", "validate",
        "verify", "write",
    }
)
FOLLOW_UP_VERBS = frozenset(
    {
        "benchmark", "commit", "deploy", "document", "merge", "monitor", "publish",
        "release", "review", "test", "update", "validate", "verify",
    }
)
QUESTION_WORDS = frozenset(
    {"what", "how", "why", "where", "when", "which", "who", "does", "do", "is", "are", "can", "should"}
)
PRONOUNS = frozenset({"it", "its", "this", "that", "these", "those", "them", "they"})
_LEADING_FILLER = frozenset({"please", "also", "then", "next", "finally", "and"})
_STOPWORDS = frozenset(
    {
        "the", "for", "and", "with", "from", "into", "onto", "about", "our", "your", "their",
        "all", "any", "some", "new", "then", "also", "next", "after", "before", "using", "use",
    }
)

_CLAUSE_SPLIT = re.compile(
    r"(\s*[,;]\s*(?:(?:and|then|also)\s+)*|\s+(?:and\s+then|and|then|also)\s+|(?<=\?)\s+)",
    re.IGNORECASE,
)
_WORD = re.compile(r"[a-z]+", re.IGNORECASE)
_SEQUENTIAL = re.compile(r"\b(then|next|after|followed by)\b", re.IGNORECASE)
_FLOW = re.compile(r"\b(flow|process|workflow|pipeline|lifecycle)\b", re.IGNORECASE)
_RANGE = re.compile(r"\bfrom\b.+\bto\b", re.IGNORECASE)
_HOW_WORKS = re.compile(r"\bhow does\b.+\bwork", re.IGNORECASE)

DECOMPOSITION_PROMPT = """
Break down the complex developer query into 2-{max_sub_queries} simpler sub-queries.

Rules:
1. Each sub-query must be standalone and answerable
2. List sub-queries in execution order
3. If a sub-query needs the result of an earlier one, list the earlier id in dependencies
4. Higher priority executes first

Return ONLY a JSON array:
[{{"id": "1", "query": "...", "dependencies": [], "priority": 2}},
 {{"id": "2", "query": "...", "dependencies": ["1"], "priority": 1}}]
""".strip()


class SubQueryPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    query: str = Field(min_length=1)
    dependencies: list[str] = Field(default_factory=list)
    priority: int = 1


_SPLIT_SCHEMA = TypeAdapter(list[SubQueryPayload])


@dataclass(slots=True)
class _Clause:
    text: str
    opener: str | None

    @property
    def words(self) -> list[str]:
        return _words(self.text)

    @property
    def subject_terms(self) -> set[str]:
        return {
            term
            for term in tokenize_terms(self.text)
            if term not in ACTION_VERBS
            and term not in _STOPWORDS
            and term not in PRONOUNS
            and term not in QUESTION_WORDS
        }


def complexity_indicators(query: str) -> list[str]:
    """Names of the complexity cues present in `query`."""

    found: list[str] = []
    if len(split_clauses(query)) >= 2:
        found.append("multiple_clauses")
    words = {word.lower() for word in _WORD.findall(query)}
    if len(words & ACTION_VERBS) >= 2:
        found.append("multiple_actions")
    if query.count("?") > 1:
        found.append("multiple_questions")
    if _SEQUENTIAL.search(query):
        found.append("sequential_connector")
    if _FLOW.search(query):
        found.append("flow_vocabulary")
    if _RANGE.search(query):
        found.append("range")
    if _HOW_WORKS.search(query):
        found.append("how_it_works")
    if len(query.split()) > 20:
        found.append("long_query")
    return found


def split_clauses(query: str) -> list[_Clause]:
    """Split on coordinators, merging fragments that are not actionable.

    A fragment that does not open with an action verb or a question word
    ("tests and docs", "Redis, Memcached") is glued back onto the previous
    clause together with its separator.
    """

    parts = _CLAUSE_SPLIT.split(query.strip())
    clauses: list[_Clause] = []
    pending_separator = ""
    for index, part in enumerate(parts):
        if index % 2 == 1:
            pending_separator = part or ""
            continue
        fragment = part.strip()
        if not fragment:
            continue
        opener = _opener(fragment)
        if clauses and opener is None:
            previous = clauses[-1]
            previous.text = f"{previous.text}{pending_separator}{fragment}"
            continue
        clauses.append(_Clause(text=_strip_filler(fragment), opener=opener))
    for clause in clauses:
        clause.text = clause.text.rstrip(" .!")
    return [clause for clause in clauses if clause.text]


def _words(text: str) -> list[str]:
    return [word.lower() for word in _WORD.findall(text)]


def _opener(fragment: str) -> str | None:
    for word in _words(fragment):
        if word in _LEADING_FILLER:
            continue
        if word in ACTION_VERBS or word in QUESTION_WORDS:
            return word
        return None
    return None


def _strip_filler(fragment: str) -> str:
    words = fragment.split()
    while words and words[0].lower().strip(",;") in _LEADING_FILLER:
        words.pop(0)
    return " ".join(words) if words else fragment


def infer_dependencies(clauses: Sequence[_Clause]) -> list[list[int]]:
    """Dependencies of each clause, as indices of earlier clauses."""

    dependencies: list[list[int]] = []
    for index, clause in enumerate(clauses):
        if index == 0:
            dependencies.append([])
            continue
        terms = set(tokenize_terms(clause.text))
        explicit = [
            earlier
            for earlier in range(index)
            if clauses[earlier].subject_terms & terms
        ]
        if explicit:
            dependencies.append(explicit)
            continue

        words = set(clause.words)
        anaphoric = bool(words & PRONOUNS)
        follow_up = clause.opener in FOLLOW_UP_VERBS
        if anaphoric or follow_up:
            foundation = next(
                (earlier for earlier in range(index - 1, -1, -1) if not dependencies[earlier]),
                None,
            )
            dependencies.append([foundation] if foundation is not None else [])
        else:
            dependencies.append([])
    return dependencies


def assign_priorities(dependencies: Sequence[Sequence[int]]) -> list[int]:
    """Shallower clauses execute first; priority 1 is the lowest."""

    depth: list[int] = []
    for deps in dependencies:
        depth.append(1 + max((depth[d] for d in deps), default=-1))
    deepest = max(depth, default=0)
    return [deepest - level + 1 for level in depth]


def determine_strategy(sub_queries: Sequence[SubQuery]) -> ExecutionStrategy:
    if not any(sq.dependencies for sq in sub_queries):
        return "parallel"
    sequential = all(
        sq.dependencies == ([] if i == 0 else [sub_queries[i - 1].id])
        for i, sq in enumerate(sub_queries)
    )
    return "sequential" if sequential else "hybrid"


def validate_sub_queries(sub_queries: Sequence[SubQuery]) -> None:
    """Raise `DecompositionFailure` unless the sub-queries form a valid DAG."""

    if len(sub_queries) < 2:
        raise DecompositionFailure("decomposition produced fewer than two sub-queries")
    seen: set[str] = set()
    for sq in sub_queries:
        if sq.id in seen:
            raise DecompositionFailure(f"duplicate sub-query id {sq.id!r}")
        missing = [dep for dep in sq.dependencies if dep not in seen]
        if missing:
            raise DecompositionFailure(
                f"sub-query {sq.id!r} depends on unknown or later ids {missing}"
            )
        seen.add(sq.id)
    try:
        TopologicalSorter({sq.id: sq.dependencies for sq in sub_queries}).prepare()
    except CycleError as exc:
        raise DecompositionFailure(f"dependency cycle: {exc.args[1]}") from exc


class QueryDecomposer:
    """Detects complex queries and splits them into sub-queries.

    Splitting is rule based by default. With an `InferenceClient` the split is
    requested from the inference service first and the rules are used when
    that call fails. Any invalid decomposition degrades to a single
    pass-through sub-query, so `decompose` only raises on invalid input.
    """

    def __init__(
        self,
        options: DecomposerOptions | None = None,
        *,
        inference_client: InferenceClient | None = None,
    ) -> None:
        self.options = options or DecomposerOptions()
        self.inference_client = inference_client
        self.prompt = ChatPromptTemplate.from_messages(
            [("system", DECOMPOSITION_PROMPT), ("human", "Query: {query}")]
        )

    async def decompose(
        self,
        query: str,
        options: DecomposerOptions | None = None,
        *,
        token: CancellationToken | None = None,
    ) -> DecompositionResult:
        if not isinstance(query, str) or not query.strip():
            raise InvalidInputError("query must be a non-empty string")
        opts = coerce_options(DecomposerOptions, options or self.options)
        query = query.strip()

        indicators = complexity_indicators(query)
        if len(indicators) < opts.min_complexity_indicators:
            return self.simple(query, indicators, "Query is not complex")

        sub_queries: list[SubQuery] | None = None
        reasoning = ""
        if self.inference_client is not None:
            try:
                sub_queries = await self._split_with_inference(
                    self.inference_client, query, opts, token
                )
                reasoning = "Split by inference"
            except (InferenceError, DecompositionFailure) as exc:
                logger.warning("Inference decomposition failed for %r: %s", query, exc)

        try:
            if sub_queries is None:
                sub_queries = self._split_with_rules(query, opts)
                reasoning = f"Split on coordinators ({', '.join(indicators)})"
            validate_sub_queries(sub_queries)
        except DecompositionFailure as exc:
            logger.warning("Decomposition fell back to a single pass for %r: %s", query, exc)
            return self.simple(query, indicators, f"Decomposition failed: {exc}")

        strategy = determine_strategy(sub_queries)
        logger.debug("Decomposed %r into %d sub-queries (%s)", query, len(sub_queries), strategy)
        return DecompositionResult(
            is_complex=True,
            original_query=query,
            sub_queries=sub_queries,
            strategy=strategy,
            reasoning=reasoning,
            complexity_indicators=indicators,
        )

    @staticmethod
    def simple(query: str, indicators: list[str], reasoning: str) -> DecompositionResult:
        return DecompositionResult(
            is_complex=False,
            original_query=query,
            sub_queries=[SubQuery(id="1", query=query, dependencies=[], priority=1)],
            strategy="parallel",
            reasoning=reasoning,
            complexity_indicators=indicators,
        )

    def _split_with_rules(self, query: str, opts: DecomposerOptions) -> list[SubQuery]:
        clauses = split_clauses(query)
        if len(clauses) < 2:
            raise DecompositionFailure("query has fewer than two actionable clauses")
        if len(clauses) > opts.max_sub_queries:
            head = clauses[: opts.max_sub_queries - 1]
            tail = clauses[opts.max_sub_queries - 1 :]
            merged = _Clause(text=", ".join(c.text for c in tail), opener=tail[0].opener)
            clauses = [*head, merged]

        dependencies = infer_dependencies(clauses)
        priorities = assign_priorities(dependencies)
        return [
            SubQuery(
                id=str(index + 1),
                query=clause.text,
                dependencies=[str(dep + 1) for dep in deps],
                priority=priority,
            )
            for index, (clause, deps, priority) in enumerate(
                zip(clauses, dependencies, priorities, strict=True)
            )
        ]

    async def _split_with_inference(
        self,
        client: InferenceClient,
        query: str,
        opts: DecomposerOptions,
        token: CancellationToken | None,
    ) -> list[SubQuery]:
        payload = await client.generate(
            self.prompt,
            {"query": query, "max_sub_queries": opts.max_sub_queries},
            _SPLIT_SCHEMA,
            token=token,
        )
        if len(payload) > opts.max_sub_queries:
            raise DecompositionFailure(
                f"inference returned {len(payload)} sub-queries, limit is {opts.max_sub_queries}"
            )
        sub_queries = [
            SubQuery(
                id=item.id,
                query=item.query.strip(),
                dependencies=list(dict.fromkeys(item.dependencies)),
                priority=item.priority,
            )
            for item in payload
        ]
        validate_sub_queries(sub_queries)
        return sub_queries
