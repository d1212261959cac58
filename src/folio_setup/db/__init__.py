"""DB helpers for talking to a target Supabase project directly."""

from .errors import (
    UNDEFINED_FUNCTION_CODE,
    SupabaseAuthError,
    SupabaseError,
    SupabaseNotFoundError,
)
from .supabase_client import SupabaseClient

__all__ = [
    "UNDEFINED_FUNCTION_CODE",
    "SupabaseAuthError",
    "SupabaseClient",
    "SupabaseError",
    "SupabaseNotFoundError",
]
