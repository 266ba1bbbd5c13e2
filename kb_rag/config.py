"""Application configuration and environment-driven settings.

Defines the Settings class based on pydantic-settings to centralize configuration for:
- Relational store and credential encryption
- Vector store backend selection (Pinecone, pgvector, in-memory)
- Chunking, retrieval and answer-fidelity defaults
- External call timeouts and indexing job retry bounds
- Optional observability (Langfuse)

RAG defaults here may be overridden at runtime through the rag_settings table,
see kb_rag.options.
"""
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_NO_DATA_MESSAGE = (
    "Sorry, I could not find reliable information about this topic in the knowledge base."
)

DEFAULT_NORMAL_PREAMBLE = (
    "You are a helpful AI assistant. Use the CONTEXT below as the primary basis for your answer. "
    "The context is the main source, but you may complement it with general knowledge when needed."
)

DEFAULT_STRICT_PREAMBLE = (
    "You are an assistant that answers ONLY from the CONTEXT below.\n"
    "- Use only information present in the context; add nothing that is not there.\n"
    "- Do not rely on your general knowledge.\n"
    "- You may explain the context in your own words and structure it (numbering, bullet points).\n"
    'If the context does not contain the answer, reply exactly: "{no_data}"'
)

DEFAULT_SUPER_STRICT_PREAMBLE = (
    "You are a system that answers ONLY by copying text from the CONTEXT below, word for word.\n"
    "- Do not rephrase, summarize or paraphrase.\n"
    "- Do not add any word or sentence that is not in the context.\n"
    "- Do not invent steps or lists unless the context already contains them.\n"
    'If the context does not contain the answer verbatim, reply exactly: "{no_data}"'
)


class Settings(BaseSettings):
    """Strongly-typed application settings loaded from environment variables.

    Uses pydantic-settings to populate fields from a .env file or process env.
    See individual field names for semantics and safe defaults.
    """
    # Data stores
    DATABASE_URL: str = "postgresql+psycopg2://rag_user:rag_pass@db:5432/rag_db"
    CREDENTIAL_ENCRYPTION_KEY: str = Field(
        default="", description="Fernet key used to encrypt provider API keys at rest"
    )

    # Vector store
    VECTOR_STORE_BACKEND: str = "pinecone"  # pinecone | pgvector | memory
    PINECONE_API_KEY: str = ""
    PINECONE_HOST: str = ""
    PINECONE_ENVIRONMENT: str = ""
    PINECONE_INDEX_NAME: str = "chatbot-knowledge"
    PINECONE_NAMESPACE: str = ""
    PGVECTOR_DIMENSION: int = 1536
    MEMORY_VECTOR_DIMENSION: int = 0  # 0 = accept whatever is upserted first

    # Chunking
    CHUNK_SIZE: int = 1024
    CHUNK_OVERLAP: int = 200

    # Retrieval/Generation
    TOP_K: int = 5
    MIN_SCORE: float = 0.0
    ALLOWED_SOURCE_HOSTS: str = ""  # comma separated
    STRICT_MODE: bool = True
    SUPER_STRICT_MODE: bool = False
    REFUSE_WITHOUT_CONTEXT: bool = False
    NO_DATA_MESSAGE: str = DEFAULT_NO_DATA_MESSAGE
    NORMAL_PREAMBLE: str = DEFAULT_NORMAL_PREAMBLE
    STRICT_PREAMBLE: str = DEFAULT_STRICT_PREAMBLE
    SUPER_STRICT_PREAMBLE: str = DEFAULT_SUPER_STRICT_PREAMBLE
    ANSWER_TEMPERATURE: float = 0.05
    MAX_OUTPUT_TOKENS: int = 2000

    # Timeouts (seconds)
    EMBEDDING_TIMEOUT_SECONDS: float = 30.0
    EMBEDDING_BATCH_TIMEOUT_SECONDS: float = 60.0
    VECTOR_TIMEOUT_SECONDS: float = 30.0
    CHAT_TIMEOUT_SECONDS: float = 60.0
    HEALTH_TIMEOUT_SECONDS: float = 10.0

    # Indexing job
    INDEX_JOB_MAX_ATTEMPTS: int = 3
    # Budget of one run; checked before the vector upsert
    INDEX_JOB_TIMEOUT_SECONDS: int = 600
    # Age after which an `indexing` claim counts as abandoned and may be reclaimed
    INDEX_CLAIM_STALE_SECONDS: int = 1800

    # Observability (optional)
    LOG_LEVEL: str = "INFO"
    LANGFUSE_HOST: str = ""
    LANGFUSE_PUBLIC_KEY: str = ""
    LANGFUSE_SECRET_KEY: str = ""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)

    @model_validator(mode="after")
    def _claim_outlives_run(self) -> "Settings":
        floor = self.INDEX_JOB_TIMEOUT_SECONDS + self.VECTOR_TIMEOUT_SECONDS
        if self.INDEX_CLAIM_STALE_SECONDS <= floor:
            raise ValueError(
                f"INDEX_CLAIM_STALE_SECONDS must exceed INDEX_JOB_TIMEOUT_SECONDS + VECTOR_TIMEOUT_SECONDS ({floor:.0f}s)"
            )
        return self


settings = Settings()
