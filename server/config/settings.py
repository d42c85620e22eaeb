"""
Adaptive Search Settings Configuration
Tunable thresholds, TTL buckets and upstream limits for the adaptive search core
"""

from typing import Optional
from pydantic_settings import BaseSettings
from pydantic import field_validator


class AdaptiveSearchSettings(BaseSettings):
    """Configuration settings for the adaptive search core"""

    environment: str = "development"

    # Similarity thresholds
    cache_similarity_threshold: float = 0.8
    orchestrator_similarity_threshold: float = 0.60
    recent_query_similarity_threshold: float = 0.85

    # Search cache
    search_cache_max_entries: int = 1000
    search_cache_eviction_fraction: float = 0.2
    search_cache_default_ttl: float = 300.0
    search_cache_maintenance_interval: float = 60.0

    # TTL buckets (seconds)
    ttl_breaking_news: float = 120.0
    ttl_current_prices: float = 180.0
    ttl_weather: float = 300.0
    ttl_stock_market: float = 300.0
    ttl_research: float = 900.0
    ttl_comparison: float = 600.0
    ttl_factual: float = 1800.0
    ttl_howto: float = 3600.0
    ttl_general: float = 600.0

    # Recent-duplicate window
    recent_query_window_size: int = 50
    recent_query_max_age: float = 600.0

    # Circuit breakers (one per upstream dependency)
    breaker_failure_threshold: int = 5
    breaker_reset_timeout: float = 60.0
    breaker_monitoring_window: float = 300.0
    search_call_timeout: float = 25.0
    memory_call_timeout: float = 10.0
    embedding_call_timeout: float = 15.0
    llm_call_timeout: float = 30.0

    # Progressive search
    progressive_quality_threshold: float = 0.7

    # Layered resource cache
    memory_budget_mb: int = 128  # RSS growth allowed over the reading taken when a tier is built
    memory_pressure_threshold: float = 0.8
    memory_maintenance_interval: float = 30.0
    max_cache_entry_bytes: int = 1024 * 1024
    cache_version: str = "1"
    redis_url: Optional[str] = None

    # Embedding cache
    embedding_model: str = "mxbai-embed-large"
    embedding_cache_ttl: float = 3600.0
    embedding_cache_max_entries: int = 1000

    # Bundled SearXNG transport
    searxng_url: str = "http://localhost:8888"
    searxng_timeout: float = 20.0

    # Logging
    log_level: str = "INFO"
    log_path: Optional[str] = None
    structured_logging: bool = False

    @field_validator(
        "cache_similarity_threshold",
        "orchestrator_similarity_threshold",
        "recent_query_similarity_threshold",
        "search_cache_eviction_fraction",
        "progressive_quality_threshold",
        "memory_pressure_threshold",
    )
    @classmethod
    def validate_unit_interval(cls, v):
        """Ratios and thresholds must lie in [0, 1]"""
        if not 0.0 <= v <= 1.0:
            raise ValueError("Threshold must be between 0 and 1")
        return v

    @field_validator(
        "search_cache_default_ttl",
        "ttl_breaking_news",
        "ttl_current_prices",
        "ttl_weather",
        "ttl_stock_market",
        "ttl_research",
        "ttl_comparison",
        "ttl_factual",
        "ttl_howto",
        "ttl_general",
        "recent_query_max_age",
        "embedding_cache_ttl",
    )
    @classmethod
    def validate_positive_ttl(cls, v):
        """TTLs must be positive"""
        if v <= 0:
            raise ValueError("TTL must be positive")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return level

    def ttl_buckets(self) -> dict:
        """TTL bucket table keyed by category name"""
        return {
            "breaking_news": self.ttl_breaking_news,
            "current_prices": self.ttl_current_prices,
            "weather": self.ttl_weather,
            "stock_market": self.ttl_stock_market,
            "research": self.ttl_research,
            "comparison": self.ttl_comparison,
            "factual": self.ttl_factual,
            "howto": self.ttl_howto,
            "general": self.ttl_general,
        }

    model_config = {
        "env_file": ".env",
        "env_prefix": "ADAPTIVE_SEARCH_",
        "case_sensitive": False,
        "extra": "ignore",
    }


# Global settings instance
settings = AdaptiveSearchSettings()


def get_settings() -> AdaptiveSearchSettings:
    """Get settings instance (for dependency injection)"""
    return settings
