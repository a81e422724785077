import pytest

from docchat.rag.retriever import (
    CONTEXT_BANNER,
    RankedChunk,
    RetrievalResult,
    Retriever,
    format_context,
    needs_context,
    rank_results,
)

from conftest import make_record


@pytest.mark.parametrize(
    "question",
    [
        "2+2=?",
        "hello",
        "Good morning!",
        "thanks",
        "What is 12 * 7?",
        "What time is it?",
        "What's the date today",
        "Write me a simple Python function",
        "What is the capital of France?",
        "Define entropy",
        "",
        "   ",
    ],
)
def test_gate_skips_general_questions(question):
    assert needs_context(question) is False


@pytest.mark.parametrize(
    "question",
    [
        "What is the deployment architecture for the API?",
        "Summarize the quarterly report",
        "What does our onboarding policy say about laptops?",
        "Explain how the ingestion pipeline handles retries",
        "Which customers renewed their contracts last year and why did churn drop",
        "hello, where is the database config?",
    ],
)
def test_gate_requires_context(question):
    assert needs_context(question) is True


def test_ranker_drops_overlapping_near_duplicates():
    first = "The quick brown fox jumps over the lazy dog and keeps running"
    second = "The quick brown fox jumps over the lazy dog and stops"

    ranked = rank_results([second, first], [0.2, 0.1], [{}, {}])

    assert [c.text for c in ranked] == [first]


def test_ranker_sorts_by_similarity_and_converts_distance():
    ranked = rank_results(["low", "high", "mid"], [0.6, 0.1, 0.3], [{"n": 1}, {"n": 2}, {"n": 3}])

    assert [c.text for c in ranked] == ["high", "mid", "low"]
    assert ranked[0].similarity == pytest.approx(0.9)
    assert ranked[0].distance == pytest.approx(0.1)
    assert ranked[0].metadata == {"n": 2}


def test_ranker_drops_identical_trimmed_text():
    ranked = rank_results(["  same text  ", "same text"], [0.1, 0.2], [{}, {}])

    assert len(ranked) == 1
    assert ranked[0].similarity == pytest.approx(0.9)


def test_short_chunks_do_not_shadow_longer_ones():
    short = "Refund policy"
    longer = "Refund policy: customers may return items within 30 days of delivery."

    ranked = rank_results([short, longer], [0.1, 0.2], [{}, {}])

    assert [c.text for c in ranked] == [short, longer]


def test_threshold_excludes_low_similarity():
    ranked = rank_results(["keep", "drop"], [0.2, 0.5], [{}, {}], similarity_threshold=0.7)

    assert [c.text for c in ranked] == ["keep"]


def test_format_context():
    assert format_context([]) == ""

    context = format_context([RankedChunk("first", 0.9), RankedChunk(" second ", 0.8)])

    assert context == f"{CONTEXT_BANNER}\n\nfirst\n\nsecond"


def test_sources_are_distinct_and_ordered():
    result = RetrievalResult(
        question="q",
        requires_context=True,
        chunks=[
            RankedChunk("a", 0.9, {"source": "b.pdf"}),
            RankedChunk("b", 0.8, {"source": "a.txt"}),
            RankedChunk("c", 0.7, {"source": "b.pdf"}),
            RankedChunk("d", 0.6, {}),
        ],
    )

    assert result.sources == ["b.pdf", "a.txt"]


async def test_gate_false_skips_embedding(retriever, embedder):
    result = await retriever.retrieve("hello", "alice")

    assert result.requires_context is False
    assert result.chunks == []
    assert result.context == ""
    assert embedder.query_calls == []


async def test_retrieve_returns_matching_chunk(retriever, vector_store, embedder):
    question = "What does the travel policy say about trains?"
    await vector_store.upsert_chunks([make_record("doc-1", "alice", 0, question)])

    result = await retriever.retrieve(question, "alice", k=4)

    assert result.requires_context is True
    assert embedder.query_calls == [question]
    assert result.chunks[0].text == question
    assert result.context.startswith(CONTEXT_BANNER)
    assert result.sources == ["doc-1.txt"]


async def test_retrieve_is_owner_scoped(retriever, vector_store):
    question = "What does the travel policy say about trains?"
    await vector_store.upsert_chunks([make_record("doc-1", "bob", 0, question)])

    result = await retriever.retrieve(question, "alice")

    assert result.requires_context is True
    assert result.chunks == []
    assert result.context == ""


async def test_custom_gate(vector_store, embedder):
    retriever = Retriever(vector_store, embedder, gate=lambda q: False)

    result = await retriever.retrieve("What is the deployment architecture for the API?", "alice")

    assert result.requires_context is False
    assert embedder.query_calls == []
