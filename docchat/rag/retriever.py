"""RAG Retriever - context gate, semantic search and ranking.

The gate decides whether a question needs document context at all; when it
does, the question is embedded, searched within the owner's chunks, and the
hits are thresholded, deduplicated and formatted into a context block.
"""

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field

from docchat.rag.embedder import EmbeddingProvider
from docchat.rag.vector_store import VectorStore

logger = logging.getLogger(__name__)

ContextGate = Callable[[str], bool]

CONTEXT_BANNER = "The following excerpts from the uploaded documents may be relevant:"

# Length of the leading text used to spot overlapping near-duplicates
DEDUP_PREFIX_CHARS = 50

# ============================================
# Context gate
# ============================================

# Vocabulary that points at the user's own documents or systems
_DOMAIN_TERMS = re.compile(
    r"\b("
    r"apis?|endpoints?|database|db|schema|tables?|config\w*|settings|deploy\w*|"
    r"architecture|infrastructure|servers?|services?|pipelines?|integration|"
    r"documents?|docs?|files?|reports?|manual|policy|policies|procedures?|"
    r"company|organi[sz]ation|business|strategy|vision|mission|values|"
    r"projects?|products?|customers?|contracts?|team|uploaded|our"
    r")\b"
)

_ARITHMETIC = re.compile(r"^[\d\s.,+\-*/x×÷^%()=?]+$")
_ARITHMETIC_QUESTION = re.compile(
    r"^(what\s+is|what's|whats|calculate|compute|solve|how\s+much\s+is)\s+[\d\s.,+\-*/x×÷^%()=?]+$"
)
_GREETING = re.compile(
    r"^(hi|hello|hey|yo|greetings|good\s+(morning|afternoon|evening|night)|"
    r"thanks|thank\s+you|thx|bye|goodbye|see\s+you|how\s+are\s+you(\s+doing)?)"
    r"(\s+there)?[\s!.?,]*$"
)
_TIME_DATE = re.compile(
    r"\b(what\s+time\s+is\s+it|what('s|\s+is)\s+the\s+(time|date)|what\s+day\s+is\s+(it|today)|"
    r"today'?s\s+date|current\s+(time|date))\b"
)
_SNIPPET = re.compile(
    r"^(please\s+)?(write|give|show)(\s+me)?\s+(a|an|some)\s+"
    r"((simple|basic|generic|quick|small|sample|example)\s+)*"
    r"(\w+\s+)?(code\s+)?(snippet|example|function|script|program|regex)s?\b"
)
_GENERAL_KNOWLEDGE = re.compile(
    r"^(what|who)\s+(is|are|was|were)\s+|^(define|explain)\s+|^what\s+does\s+\S+\s+mean"
)
_MAX_GENERAL_WORDS = 6


def needs_context(question: str) -> bool:
    """Heuristically decide whether a question needs document context.

    Arithmetic, greetings, time/date questions, generic snippet requests and
    short general-knowledge questions are answered without retrieval, unless
    they mention a domain term. Everything else needs context.

    Misclassification only costs a wasted search or an answer without
    document grounding.
    """
    text = " ".join(question.lower().split())
    if not text:
        return False

    if _DOMAIN_TERMS.search(text):
        return True

    if _ARITHMETIC.match(text) and re.search(r"\d", text):
        return False
    if _ARITHMETIC_QUESTION.match(text):
        return False
    if _GREETING.match(text):
        return False
    if _TIME_DATE.search(text):
        return False
    if _SNIPPET.match(text):
        return False
    if _GENERAL_KNOWLEDGE.match(text) and len(text.split()) <= _MAX_GENERAL_WORDS:
        return False

    return True


# ============================================
# Ranking
# ============================================

@dataclass
class RankedChunk:
    """A chunk that survived thresholding and dedup."""

    text: str
    similarity: float
    metadata: dict = field(default_factory=dict)

    @property
    def distance(self) -> float:
        return 1.0 - self.similarity


def _dedup_prefix(text: str) -> str | None:
    """Leading text of a chunk long enough to shadow later overlapping chunks.

    Cut back to a word boundary so a chunk that diverges mid-word still matches.
    """
    if len(text) <= DEDUP_PREFIX_CHARS:
        return None

    prefix = text[:DEDUP_PREFIX_CHARS]
    if not text[DEDUP_PREFIX_CHARS].isspace():
        boundary = prefix.rfind(" ")
        if boundary > 0:
            prefix = prefix[:boundary]
    return prefix.rstrip()


def rank_results(
    chunks: list[str],
    distances: list[float],
    metadatas: list[dict],
    similarity_threshold: float | None = None,
) -> list[RankedChunk]:
    """Threshold, sort and deduplicate query hits.

    Args:
        chunks: Chunk texts
        distances: Cosine distances, parallel to ``chunks``
        metadatas: Chunk metadata, parallel to ``chunks``
        similarity_threshold: Drop chunks with similarity below this

    Returns:
        Surviving chunks, most similar first
    """
    candidates = [
        RankedChunk(text=text, similarity=1.0 - distance, metadata=metadata or {})
        for text, distance, metadata in zip(chunks, distances, metadatas, strict=True)
    ]

    if similarity_threshold is not None:
        candidates = [c for c in candidates if c.similarity >= similarity_threshold]

    # sorted() is stable, so ties keep their query order
    candidates = sorted(candidates, key=lambda c: c.similarity, reverse=True)

    ranked: list[RankedChunk] = []
    seen_texts: set[str] = set()
    prefixes: list[str] = []

    for candidate in candidates:
        text = candidate.text.strip()
        if text in seen_texts:
            continue
        if any(text.startswith(prefix) for prefix in prefixes):
            continue

        ranked.append(candidate)
        seen_texts.add(text)
        prefix = _dedup_prefix(text)
        if prefix:
            prefixes.append(prefix)

    return ranked


def format_context(ranked: list[RankedChunk]) -> str:
    """Join surviving chunk texts under a banner; empty when nothing survived."""
    if not ranked:
        return ""
    body = "\n\n".join(chunk.text.strip() for chunk in ranked)
    return f"{CONTEXT_BANNER}\n\n{body}"


# ============================================
# Retriever
# ============================================

@dataclass
class RetrievalResult:
    """Outcome of the gate plus search for one question."""

    question: str
    requires_context: bool
    chunks: list[RankedChunk] = field(default_factory=list)
    context: str = ""

    @property
    def sources(self) -> list[str]:
        """Distinct non-empty source filenames, in rank order."""
        sources: list[str] = []
        for chunk in self.chunks:
            source = chunk.metadata.get("source")
            if isinstance(source, str) and source and source not in sources:
                sources.append(source)
        return sources


class Retriever:
    """Semantic retrieval scoped to one owner."""

    def __init__(
        self,
        vector_store: VectorStore,
        embedder: EmbeddingProvider,
        gate: ContextGate = needs_context,
        similarity_threshold: float | None = None,
    ):
        self.vector_store = vector_store
        self.embedder = embedder
        self.gate = gate
        self.similarity_threshold = similarity_threshold

    async def retrieve(self, question: str, owner_id: str, k: int = 4) -> RetrievalResult:
        """Retrieve relevant chunks for a question.

        Args:
            question: User's question
            owner_id: Owner whose documents are searched
            k: Maximum number of chunks to fetch

        Returns:
            RetrievalResult; ``chunks`` is empty when the gate skipped retrieval
        """
        if not self.gate(question):
            logger.info("[Retriever] Question does not need document context")
            return RetrievalResult(question=question, requires_context=False)

        query_vector = await self.embedder.embed_query(question)
        matches = await self.vector_store.query(query_vector, k, owner_id)

        ranked = rank_results(
            [m.text for m in matches],
            [m.distance for m in matches],
            [m.metadata for m in matches],
            similarity_threshold=self.similarity_threshold,
        )
        logger.info(f"[Retriever] {len(ranked)}/{len(matches)} chunks kept for owner {owner_id}")

        return RetrievalResult(
            question=question,
            requires_context=True,
            chunks=ranked,
            context=format_context(ranked),
        )
