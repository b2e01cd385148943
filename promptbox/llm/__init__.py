"""LLM access package.

Architectural role:
    Provides model-option configuration, request-payload construction, and
    streaming transport adapters used by the run pipeline to invoke Ollama,
    LM Studio, and OpenAI.

Module split:
    - `provider_config`: provider routing and layered model options.
    - `service`: streaming dispatch and context-size discovery.
    - `client`: provider-specific HTTP transport and stream decoding.
"""
