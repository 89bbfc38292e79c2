"""Core orchestration engine for virtual-csuite.

Modules:
    llm_config      Provider selection and credentials
    llm_provider    Backend adapters (Vultr, SambaNova, Cloudflare, local)
    resilience      Retry policy and executor with backoff + jitter
    scatter_gather  Concurrent labeled units with aggregate outcome
    routing         LLM-driven consultant selection
    sse             Incremental Server-Sent-Events token decoding
    stream_relay    Streamed synthesis with layered fallback
    orchestration   Batch analysis and chat pipelines
"""
