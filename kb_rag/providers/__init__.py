from kb_rag.providers.base import BackendKind, ChatProvider, EmbeddingProvider, ProviderSettings
from kb_rag.providers.chat import build_chat_provider
from kb_rag.providers.embedding import HashEmbeddingProvider, build_embedding_provider

__all__ = [
    "BackendKind",
    "ChatProvider",
    "EmbeddingProvider",
    "ProviderSettings",
    "HashEmbeddingProvider",
    "build_chat_provider",
    "build_embedding_provider",
]
