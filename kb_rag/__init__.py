"""Knowledge-base retrieval-augmented generation core.

Submodules overview:
- main: FastAPI application, routes and lifecycle.
- config: Application settings and environment variable loading.
- options: Runtime RAG options (env defaults overlaid with rag_settings rows).
- db: Database engine/session management helpers.
- models: ORM models for entries, chunks, provider configurations and settings.
- schemas: Pydantic request/response models for API contracts.
- chunking: Overlapping, boundary-aware text chunking.
- providers: Embedding and chat provider backends and the active-provider registry.
- vector_store: Vector store backends (Pinecone, pgvector, in-memory).
- indexing: Indexing job and its state machine.
- retrieval: Retrieval and answer service.
- generation: Prompt assembly per fidelity mode.
- health: Health and compatibility checks.
- crypto: Credential encryption.
- obs: Observability utilities (tracing/spans).
- utils: General-purpose helper functions.
"""
