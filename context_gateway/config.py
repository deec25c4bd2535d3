"""Configuration for the Context Gateway service."""

import os
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Environment-based configuration."""

    # Service
    host: str = "0.0.0.0"
    port: int = int(os.getenv("GATEWAY_PORT", "8095"))
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # LLM provider (litellm model names, e.g. "anthropic/claude-3-5-haiku-latest")
    default_model: str = os.getenv(
        "DEFAULT_MODEL", "anthropic/claude-3-5-haiku-latest"
    )
    # Picked for large code generation and long detailed requests (task_class="auto")
    large_model: str = os.getenv("LARGE_MODEL", "anthropic/claude-3-5-sonnet-latest")
    default_max_output_tokens: int = int(os.getenv("DEFAULT_MAX_OUTPUT_TOKENS", "1024"))
    provider_heartbeat_seconds: float = float(os.getenv("PROVIDER_HEARTBEAT_SECONDS", "120"))
    temperature: float = 0.7
    system_prompt: str = (
        "You are a helpful AI assistant. Use the following context to answer "
        "the user's question. If you don't know the answer, say so."
    )

    # Context assembly (estimated tokens, 1 token ~ 4 chars)
    context_budget: int = int(os.getenv("CONTEXT_BUDGET", "8000"))
    context_max_chunks: int = int(os.getenv("CONTEXT_MAX_CHUNKS", "200"))
    min_compressed_chars: int = 40

    # Rate limiting: per client key, sliding window
    rate_limit: int = int(os.getenv("RATE_LIMIT", "20"))
    rate_limit_window_seconds: float = float(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "300"))
    rate_limit_sweep_seconds: float = float(os.getenv("RATE_LIMIT_SWEEP_SECONDS", "600"))

    # Response cache for frequently asked prompts
    response_cache_enabled: bool = True
    response_cache_max_entries: int = int(os.getenv("RESPONSE_CACHE_MAX_ENTRIES", "1000"))
    response_cache_max_age_seconds: float = float(os.getenv("RESPONSE_CACHE_MAX_AGE_SECONDS", "86400"))

    # Continuation of truncated responses
    max_continuations: int = int(os.getenv("MAX_CONTINUATIONS", "20"))

    # Pricing: model used when a model has no pricing entry
    default_pricing_model: str = os.getenv("DEFAULT_PRICING_MODEL", "claude-3-5-haiku")

    # MongoDB (optional shared store for rate limits + usage). Empty = in-memory.
    mongodb_url: str = os.getenv("MONGODB_URL", "")
    mongodb_database: str = os.getenv("MONGODB_DATABASE", "context_gateway")

    class Config:
        env_prefix = "GATEWAY_"


settings = Settings()
