"""Backend utilities"""
from .supabase_client import get_supabase_client
from .participant import get_participant_email

__all__ = ["get_supabase_client", "get_participant_email"]
