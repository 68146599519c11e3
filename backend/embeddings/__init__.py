from .pipeline import BATCH_FAILURE_LIMIT, EmbeddingBatchResult, EmbeddingPipeline
from .providers import (
    EmbeddingProvider,
    LocalHashEmbeddingProvider,
    ProviderSelection,
    create_provider,
    select_provider,
)

__all__ = [
    "BATCH_FAILURE_LIMIT",
    "EmbeddingBatchResult",
    "EmbeddingPipeline",
    "EmbeddingProvider",
    "LocalHashEmbeddingProvider",
    "ProviderSelection",
    "create_provider",
    "select_provider",
]
