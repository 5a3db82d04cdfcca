"""Quote Intake Services Module"""
from .audit import AuditTrail
from .cache import TTLCache
from .llm import LLMClient
from .operator import OperatorActions
from .rate_limiter import LimiterRegistry, RateLimiter, RateLimiterConfig
from .read_models import DashboardReadModel
from .repository import InMemoryRepository, QuotationRepository, SupabaseRepository

__all__ = [
    "AuditTrail", "TTLCache", "LLMClient", "OperatorActions", "LimiterRegistry", "RateLimiter",
    "RateLimiterConfig", "DashboardReadModel", "InMemoryRepository", "QuotationRepository", "SupabaseRepository",
]
