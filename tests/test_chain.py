from docchat.rag.chain import NO_CONTEXT_PLACEHOLDER, RAGChain, build_rag_prompt
from docchat.rag.exceptions import InsufficientContext

from conftest import make_record


def test_prompt_keeps_context_block_without_context():
    prompt = build_rag_prompt("What is 2+2?", "")

    assert NO_CONTEXT_PLACEHOLDER in prompt
    assert "Context (if available):" in prompt
    assert prompt.rstrip().endswith("Answer:")
    assert "Question: What is 2+2?" in prompt


async def test_general_question_uses_placeholder(retriever, completion, embedder):
    chain = RAGChain(retriever, completion)

    answer = await chain.generate_response("hello", "alice")

    assert answer.response == "stub answer"
    assert answer.sources == []
    assert NO_CONTEXT_PLACEHOLDER in completion.prompts[0]
    assert embedder.query_calls == []


async def test_document_question_includes_context_and_sources(retriever, vector_store, completion):
    question = "What does the travel policy say about trains?"
    await vector_store.upsert_chunks([make_record("handbook", "alice", 0, question)])
    chain = RAGChain(retriever, completion)

    answer = await chain.generate_response(question, "alice")

    assert answer.response == "stub answer"
    assert answer.sources == ["handbook.txt"]
    assert question in completion.prompts[0]
    assert NO_CONTEXT_PLACEHOLDER not in completion.prompts[0]


async def test_insufficient_context_skips_the_model(retriever, completion):
    chain = RAGChain(retriever, completion)

    answer = await chain.generate_response("What is the deployment architecture for the API?", "alice")

    assert answer.response == InsufficientContext.user_message
    assert answer.sources == []
    assert completion.prompts == []
