"""Fast-model answer synthesis over retrieved chunks."""

from __future__ import annotations

from typing import Any

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.prompts import ChatPromptTemplate

from mnemo.types import RetrievedChunk

SYNTHESIS_SYSTEM_PROMPT = """
You are a helpful assistant answering questions based on the provided context.
Be concise, accurate, and cite sources when relevant.
If the context doesn't contain enough information to answer fully, say so.
""".strip()

SYNTHESIS_PROMPT = ChatPromptTemplate.from_messages(
    [
        ("system", "{system_prompt}"),
        (
            "human",
            "Context:\n{context}\n\nQuestion: {question}\n\nAnswer based on the context above:",
        ),
    ]
)


def format_chunk_context(chunks: list[RetrievedChunk]) -> str:
    """Label each chunk `[Source i: filename]` and separate them with rules."""
    return "\n\n---\n\n".join(
        f"[Source {i}: {chunk.filename}]\n{chunk.content}" for i, chunk in enumerate(chunks, start=1)
    )


class ChunkSynthesizer:
    """Answers from retrieved chunks only, using any LangChain chat model."""

    def __init__(self, llm: BaseChatModel, *, model_name: str) -> None:
        self.llm = llm
        self.model_name = model_name

    async def synthesize(
        self,
        query: str,
        chunks: list[RetrievedChunk],
        *,
        max_output_tokens: int,
        temperature: float,
        system_prompt: str | None = None,
    ) -> str:
        chain = SYNTHESIS_PROMPT | self.llm.bind(max_tokens=max_output_tokens, temperature=temperature)
        message = await chain.ainvoke(
            {
                "system_prompt": system_prompt or SYNTHESIS_SYSTEM_PROMPT,
                "context": format_chunk_context(chunks),
                "question": query,
            }
        )
        return _message_text(message)


def _message_text(message: Any) -> str:
    content = getattr(message, "content", message)
    if isinstance(content, list):
        content = "".join(part.get("text", "") if isinstance(part, dict) else str(part) for part in content)
    if content:
        return str(content)
    # Reasoning models may put the whole answer here.
    extra = getattr(message, "additional_kwargs", {}) or {}
    return str(extra.get("reasoning_content", ""))
