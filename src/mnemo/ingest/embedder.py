"""Embedding abstractions and a deterministic code-aware baseline."""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from hashlib import blake2b
from math import sqrt

_WORD = re.compile(r"[A-Za-z][A-Za-z0-9]*|\d+")
_CAMEL = re.compile(r"[A-Z]+(?=[A-Z][a-z])|[A-Z]?[a-z]+|[A-Z]+|\d+")


class Embedder(ABC):
    """Embedder interface used by indexing and retrieval."""

    @abstractmethod
    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        """Embed many documents."""

    @abstractmethod
    def embed_query(self, text: str) -> list[float]:
        """Embed one query."""


def code_terms(text: str) -> list[str]:
    """Split text into lower-cased terms, breaking camelCase and snake_case.

    `parseHTTPResponse` yields the compound plus `parse`, `http`, `response`
    so that natural-language queries can match identifiers.
    """

    terms: list[str] = []
    for word in _WORD.findall(text):
        lowered = word.lower()
        terms.append(lowered)
        parts = _CAMEL.findall(word)
        if len(parts) > 1:
            terms.extend(part.lower() for part in parts)
    return terms


class HashingEmbedder(Embedder):
    """Feature-hashed bag of code terms, L2-normalised.

    Needs no model server, which keeps indexing and tests deterministic. Swap
    in a real embedding model behind the same interface for production
    quality.
    """

    def __init__(self, dimension: int = 512) -> None:
        self.dimension = dimension

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return [self._embed(text) for text in texts]

    def embed_query(self, text: str) -> list[float]:
        return self._embed(text)

    def _embed(self, text: str) -> list[float]:
        vector = [0.0] * self.dimension
        terms = code_terms(text)
        if not terms:
            return vector

        for term in terms:
            digest = blake2b(term.encode("utf-8"), digest_size=8).digest()
            idx = int.from_bytes(digest[:4], "little") % self.dimension
            vector[idx] += 1.0

        norm = sqrt(sum(value * value for value in vector))
        return [value / norm for value in vector]
