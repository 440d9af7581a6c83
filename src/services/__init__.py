"""Services module for storage, caching and spend control."""

from src.services.ai_cost_tracker import (
    DEFAULT_PRICING,
    Authorization,
    BudgetConfig,
    BudgetExceeded,
    BudgetStatus,
    CostStats,
    CostTracker,
)
from src.services.git_resolver import GitResolver, StaticVCSResolver, VCSResolver
from src.services.vision_cache import CacheStats, VisionResultCache, generate_key
from src.services.vision_store import StoredEntry, VisionStore

__all__ = [
    # Cost tracking
    "DEFAULT_PRICING",
    "Authorization",
    "BudgetConfig",
    "BudgetExceeded",
    "BudgetStatus",
    "CostStats",
    "CostTracker",
    # VCS
    "GitResolver",
    "StaticVCSResolver",
    "VCSResolver",
    # Caching
    "CacheStats",
    "VisionResultCache",
    "generate_key",
    "VisionStore",
    "StoredEntry",
]
