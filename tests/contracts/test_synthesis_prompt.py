import pytest
from langchain_core.language_models.fake_chat_models import FakeListChatModel

from mnemo.query.synthesis import (
    SYNTHESIS_PROMPT,
    SYNTHESIS_SYSTEM_PROMPT,
    ChunkSynthesizer,
    format_chunk_context,
)
from mnemo.types import RetrievedChunk

CHUNKS = [
    RetrievedChunk(content="def load():\n    ...", score=0.9, filename="app/config.py"),
    RetrievedChunk(content="# Config\nSettings live in .env", score=0.7, filename="README.md"),
]


def test_system_prompt_asks_for_grounded_answers() -> None:
    assert "based on the provided context" in SYNTHESIS_SYSTEM_PROMPT
    assert "cite sources" in SYNTHESIS_SYSTEM_PROMPT
    assert "say so" in SYNTHESIS_SYSTEM_PROMPT


def test_chunks_are_labelled_by_source() -> None:
    context = format_chunk_context(CHUNKS)

    assert context == (
        "[Source 1: app/config.py]\ndef load():\n    ..."
        "\n\n---\n\n"
        "[Source 2: README.md]\n# Config\nSettings live in .env"
    )


def test_prompt_places_context_before_the_question() -> None:
    messages = SYNTHESIS_PROMPT.format_messages(
        system_prompt=SYNTHESIS_SYSTEM_PROMPT,
        context=format_chunk_context(CHUNKS),
        question="Where do settings live?",
    )

    assert messages[0].content == SYNTHESIS_SYSTEM_PROMPT
    human = messages[1].content
    assert human.startswith("Context:\n[Source 1: app/config.py]")
    assert human.endswith("Question: Where do settings live?\n\nAnswer based on the context above:")


@pytest.mark.asyncio
async def test_synthesizer_returns_model_text() -> None:
    synthesizer = ChunkSynthesizer(FakeListChatModel(responses=["In .env [Source 2]."]), model_name="fast")

    answer = await synthesizer.synthesize("Where?", CHUNKS, max_output_tokens=100, temperature=0.3)

    assert answer == "In .env [Source 2]."
