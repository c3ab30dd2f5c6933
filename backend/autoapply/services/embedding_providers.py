"""
Embedding Providers - Implementations of the embedding capability

One provider is bound per process (``embedding_provider`` setting) and
injected into the MatchingEngine and the embedding refresh task. Every
provider satisfies ``autoapply.services.capabilities.EmbeddingProvider``.

Providers:
    | Name   | Backend                          | Default dimensions |
    |--------|----------------------------------|--------------------|
    | openai | text-embedding-3-small (API)     | 1536               |
    | local  | nomic-embed-text-v1.5 (on host)  | 768                |
    | mock   | md5-derived vectors (tests, dev) | 768                |

Blank texts never reach a backend: they embed to the zero vector, which
scores 0 under cosine similarity.

Failures surface as TransientCapabilityError (network, rate limit, 5xx)
or PermanentCapabilityError (rejected input, missing model); retrying is
the caller's decision.
"""

import asyncio
import hashlib
import logging
import time
from typing import Any, Callable, Dict, List, Optional

import openai
from openai import AsyncOpenAI

from autoapply.errors import PermanentCapabilityError
from autoapply.middleware.metrics import record_embedding_latency
from autoapply.services.capabilities import EmbeddingProvider, translate_openai_error

logger = logging.getLogger(__name__)

CAPABILITY = "embedding"

# Vector length per model; a change of model makes stored vectors stale
MODEL_DIMENSIONS: Dict[str, int] = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
    "nomic-ai/nomic-embed-text-v1.5": 768,
    "BAAI/bge-large-en-v1.5": 1024,
    "sentence-transformers/all-MiniLM-L6-v2": 384,
    "sentence-transformers/all-mpnet-base-v2": 768,
}

DEFAULT_OPENAI_MODEL = "text-embedding-3-small"
DEFAULT_LOCAL_MODEL = "nomic-ai/nomic-embed-text-v1.5"


def _clean(text: str) -> str:
    return " ".join((text or "").split())


class _BackendProvider:
    """
    Shared batching for providers backed by a real model.

    Subclasses implement ``_encode(texts)`` for non-empty, cleaned texts;
    this class handles blank inputs, result ordering and latency metrics.
    """

    backend = "unknown"

    def __init__(self, model: str, default_dimensions: int) -> None:
        self.model = model
        self._dimensions = MODEL_DIMENSIONS.get(model, default_dimensions)

    @property
    def dimensions(self) -> int:
        return self._dimensions

    def _zeros(self) -> List[float]:
        return [0.0] * self._dimensions

    async def _encode(self, texts: List[str]) -> List[List[float]]:
        raise NotImplementedError

    async def embed(self, text: str) -> List[float]:
        return (await self.embed_batch([text]))[0]

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        cleaned = [_clean(t) for t in texts]
        positions = [i for i, t in enumerate(cleaned) if t]

        result = [self._zeros() for _ in texts]
        if not positions:
            return result

        start = time.perf_counter()
        try:
            vectors = await self._encode([cleaned[i] for i in positions])
        finally:
            record_embedding_latency(self.backend, time.perf_counter() - start)

        for i, vector in zip(positions, vectors):
            result[i] = [float(v) for v in vector]
        return result


class OpenAIEmbeddings(_BackendProvider):
    """
    OpenAI embeddings API.

    Example:
        >>> provider = OpenAIEmbeddings(api_key="sk-...")
        >>> vector = await provider.embed("Python developer")
    """

    backend = "openai"

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_OPENAI_MODEL,
        batch_size: int = 100,
    ) -> None:
        super().__init__(model, default_dimensions=1536)
        self.api_key = api_key
        self.batch_size = batch_size
        self._client: Optional[AsyncOpenAI] = None

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self.api_key)
        return self._client

    async def _encode(self, texts: List[str]) -> List[List[float]]:
        client = self._get_client()
        vectors: List[List[float]] = []
        # The API caps inputs per request
        for offset in range(0, len(texts), self.batch_size):
            chunk = texts[offset:offset + self.batch_size]
            try:
                response = await client.embeddings.create(input=chunk, model=self.model)
            except openai.OpenAIError as e:
                raise translate_openai_error(CAPABILITY, e) from e
            vectors.extend(item.embedding for item in response.data)
        return vectors


class LocalEmbeddings(_BackendProvider):
    """
    sentence-transformers model running on this host.

    Needs the ``local`` extra. The model loads on first use unless
    ``lazy_load`` is False; encoding runs in the default executor so the
    event loop stays responsive.
    """

    backend = "local"

    def __init__(self, model_name: str = DEFAULT_LOCAL_MODEL, lazy_load: bool = True) -> None:
        super().__init__(model_name, default_dimensions=768)
        self.model_name = model_name
        self._model = None
        if not lazy_load:
            self._load_model()

    def _load_model(self):
        if self._model is not None:
            return self._model

        try:
            from sentence_transformers import SentenceTransformer
        except ImportError as e:
            raise PermanentCapabilityError(
                CAPABILITY,
                "local embeddings need sentence-transformers "
                "(pip install autoapply-backend[local])",
            ) from e

        logger.info(f"Loading embedding model {self.model_name}")
        try:
            self._model = SentenceTransformer(self.model_name, trust_remote_code=True)
        except Exception as e:
            raise PermanentCapabilityError(CAPABILITY, f"cannot load {self.model_name}: {e}") from e
        return self._model

    async def _run(self, inputs):
        model = self._load_model()
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: model.encode(inputs).tolist())

    async def _encode(self, texts: List[str]) -> List[List[float]]:
        return await self._run(texts)

    async def embed(self, text: str) -> List[float]:
        # A bare string encodes to a flat vector
        cleaned = _clean(text)
        if not cleaned:
            return self._zeros()
        start = time.perf_counter()
        try:
            vector = await self._run(cleaned)
        finally:
            record_embedding_latency(self.backend, time.perf_counter() - start)
        return [float(v) for v in vector]


class MockEmbeddingProvider:
    """Deterministic vectors derived from an md5 of the text. No I/O."""

    def __init__(self, dimensions: int = 768) -> None:
        self._dimensions = dimensions

    @property
    def dimensions(self) -> int:
        return self._dimensions

    def _vector(self, text: str) -> List[float]:
        text = _clean(text)
        if not text:
            return [0.0] * self._dimensions
        digest = hashlib.md5(text.encode("utf-8")).hexdigest()
        # Two hex digits per component, scaled to [-1, 1]
        return [
            int(digest[(2 * i) % 32:(2 * i) % 32 + 2], 16) / 127.5 - 1
            for i in range(self._dimensions)
        ]

    async def embed(self, text: str) -> List[float]:
        return self._vector(text)

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        return [self._vector(t) for t in texts]


def _build_openai(api_key: Optional[str], model_name: Optional[str], **_: Any) -> EmbeddingProvider:
    if not api_key:
        raise ValueError("OpenAI embeddings require api_key")
    return OpenAIEmbeddings(api_key=api_key, model=model_name or DEFAULT_OPENAI_MODEL)


def _build_local(api_key: Optional[str], model_name: Optional[str], lazy_load: bool = True, **_: Any) -> EmbeddingProvider:
    return LocalEmbeddings(model_name=model_name or DEFAULT_LOCAL_MODEL, lazy_load=lazy_load)


def _build_mock(api_key: Optional[str], model_name: Optional[str], dimensions: int = 768, **_: Any) -> EmbeddingProvider:
    return MockEmbeddingProvider(dimensions=dimensions)


PROVIDERS: Dict[str, Callable[..., EmbeddingProvider]] = {
    "openai": _build_openai,
    "local": _build_local,
    "mock": _build_mock,
}


def get_embedding_provider(
    provider_name: str = "openai",
    api_key: Optional[str] = None,
    model_name: Optional[str] = None,
    **kwargs: Any,
) -> EmbeddingProvider:
    """
    Build the embedding provider named in configuration.

    Args:
        provider_name: "openai", "local" or "mock"
        api_key: Required for openai
        model_name: Optional model override
        **kwargs: ``lazy_load`` (local), ``dimensions`` (mock)

    Raises:
        ValueError: Unknown provider or missing api_key
    """
    builder = PROVIDERS.get(provider_name.lower())
    if builder is None:
        raise ValueError(
            f"Unknown embedding provider: {provider_name}. Supported: {', '.join(PROVIDERS)}"
        )
    return builder(api_key, model_name, **kwargs)
