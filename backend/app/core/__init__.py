"""
Core application modules.
Contains logging, metrics, tracing, request middleware and the Supabase client.
"""
from .database import get_supabase_client

__all__ = ["get_supabase_client"]
