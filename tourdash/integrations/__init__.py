"""
External integrations.

- RemoteDataSource: interface the data layer reads the relational store through
- SupabaseClient: PostgREST implementation with retries and circuit breaker
- EdgeFunctions: provisioning and chatbot RPCs
"""

from tourdash.integrations.base import (
    Filter,
    RemoteDataSource,
    RemoteFetchError,
    filters_from_dict,
)
from tourdash.integrations.supabase import (
    CircuitBreaker,
    EdgeFunctions,
    ProvisionResult,
    RetryConfig,
    SupabaseClient,
    SupabaseError,
)
from tourdash.integrations.config import create_supabase_client

__all__ = [
    "Filter",
    "RemoteDataSource",
    "RemoteFetchError",
    "filters_from_dict",
    "CircuitBreaker",
    "EdgeFunctions",
    "ProvisionResult",
    "RetryConfig",
    "SupabaseClient",
    "SupabaseError",
    "create_supabase_client",
]
