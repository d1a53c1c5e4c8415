"""Supabase client creation shared by the function modules."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from supabase import Client, create_client

from ..utils.config_validator import validate_config

logger = logging.getLogger(__name__)


@dataclass
class SupabaseConfig:
    """Configuration for a Supabase connection.

    Attributes:
        url: Supabase project URL
        key: Supabase API key (anon or service role)
    """
    url: str
    key: str

    @classmethod
    def from_env(
        cls,
        url_var: str = "SUPABASE_URL",
        key_var: str = "SUPABASE_KEY",
    ) -> SupabaseConfig:
        """Create configuration from environment variables.

        Raises:
            ConfigurationError: If either variable is not set
        """
        values = validate_config([url_var, key_var])
        return cls(url=values[url_var], key=values[key_var])


def get_supabase_client(config: Optional[SupabaseConfig] = None) -> Client:
    """Create a Supabase client.

    Example:
        >>> client = get_supabase_client()
        >>> client.table("frame_analysis_cache").select("image_hash").limit(1).execute()
    """
    if config is None:
        config = SupabaseConfig.from_env()
    logger.debug("Creating Supabase client for %s", config.url)
    return create_client(config.url, config.key)
