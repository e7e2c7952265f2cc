"""Local sentence-transformers embeddings."""

from __future__ import annotations

import asyncio
from typing import Any, Optional

import structlog

from answer_search.config import settings

logger = structlog.get_logger(__name__)


class SentenceTransformerEmbeddings:
    """Embeddings provider running a sentence-transformers model in a worker thread.

    The model is loaded on first use (or eagerly via :meth:`load`) so importing
    this module never pulls in torch. Install the ``embeddings`` extra.

    Args:
        model_name: Hugging Face model id; defaults to ``settings.embedding_model``.
    """

    def __init__(self, model_name: Optional[str] = None) -> None:
        self.model_name = model_name or settings.embedding_model
        self._model: Any = None

    def load(self) -> None:
        if self._model is None:
            from sentence_transformers import SentenceTransformer

            logger.info("embeddings.loading", model=self.model_name)
            self._model = SentenceTransformer(self.model_name)
            logger.info("embeddings.loaded", model=self.model_name)

    @property
    def loaded(self) -> bool:
        return self._model is not None

    async def embed_query(self, text: str) -> list[float]:
        self.load()
        vector = await asyncio.to_thread(self._model.encode, text, normalize_embeddings=True)
        return vector.tolist()
