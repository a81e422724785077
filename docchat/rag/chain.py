"""Answer generation: retrieval context plus a completion call."""

import logging
from dataclasses import dataclass, field

from docchat.core.config import Settings
from docchat.rag.completion import CompletionProvider, create_completion
from docchat.rag.embedder import create_openai_client
from docchat.rag.exceptions import InsufficientContext
from docchat.rag.retriever import Retriever

logger = logging.getLogger(__name__)

SYSTEM_TEMPLATE = """You are a helpful AI assistant that can answer questions based on both provided context and general knowledge.

If context is provided, use it to answer questions about the user's documents.
If no context is provided, you can answer using your general knowledge for common questions.

Context (if available):
{context}

Question: {question}

Answer: """

NO_CONTEXT_PLACEHOLDER = "No specific context needed for this general knowledge question."


def build_rag_prompt(question: str, context: str) -> str:
    """Fill the template; the context block is never omitted."""
    return SYSTEM_TEMPLATE.format(context=context or NO_CONTEXT_PLACEHOLDER, question=question)


@dataclass
class ChatAnswer:
    """Generated response and the documents that grounded it."""

    response: str
    sources: list[str] = field(default_factory=list)


class RAGChain:
    """Gate, retrieve, then answer."""

    def __init__(self, retriever: Retriever, completion: CompletionProvider, k: int = 4):
        self.retriever = retriever
        self.completion = completion
        self.k = k

    async def generate_response(self, question: str, owner_id: str) -> ChatAnswer:
        """Answer a question from the owner's documents or general knowledge.

        When the question needs document context and none is relevant enough,
        the model is not called and a fixed "not enough information" answer is
        returned instead.
        """
        try:
            result = await self._retrieve(question, owner_id)
        except InsufficientContext as e:
            logger.info("[Chain] No relevant context for question, declining to answer")
            return ChatAnswer(response=e.user_message)

        response = await self.completion.complete(build_rag_prompt(question, result.context))
        return ChatAnswer(response=response, sources=result.sources)

    async def _retrieve(self, question: str, owner_id: str):
        result = await self.retriever.retrieve(question, owner_id, self.k)
        if result.requires_context and not result.chunks:
            raise InsufficientContext(question)
        return result


def create_rag_chain(settings: Settings, retriever: Retriever) -> RAGChain:
    """Wire the answer chain with the configured completion model."""
    client = create_openai_client(settings)
    return RAGChain(retriever, create_completion(settings, client), k=settings.retrieval_top_k)
