"""
Configuration validation utilities.

Typed readers for environment variables that fail with clear messages.
"""

import os
from typing import Dict, List, Optional


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


def validate_config(required: List[str], optional: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """
    Validate required configuration variables and gather optional ones.

    Raises:
        ConfigurationError: If any required variable is missing
    """
    config = {}
    missing = []

    for var_name in required:
        value = os.getenv(var_name)
        if not value:
            missing.append(var_name)
        else:
            config[var_name] = value

    if missing:
        raise ConfigurationError(
            f"Missing required environment variables: {', '.join(missing)}\n"
            f"Please set these variables in your .env file or environment."
        )

    if optional:
        for var_name, default_value in optional.items():
            config[var_name] = os.getenv(var_name, default_value)

    return config


def validate_int_env(name: str, default: Optional[int] = None, min_value: Optional[int] = None,
                     max_value: Optional[int] = None) -> int:
    """
    Validate an integer environment variable.

    Raises:
        ConfigurationError: If the value is missing (without default), malformed or out of range
    """
    value_str = os.getenv(name)
    if not value_str:
        if default is None:
            raise ConfigurationError(f"Missing required integer environment variable: {name}")
        return default

    try:
        value = int(value_str)
    except ValueError:
        raise ConfigurationError(
            f"Invalid integer value for {name}: '{value_str}'\n"
            f"Expected an integer value."
        )

    _check_range(name, value, min_value, max_value)
    return value


def validate_float_env(name: str, default: Optional[float] = None, min_value: Optional[float] = None,
                       max_value: Optional[float] = None) -> float:
    """
    Validate a float environment variable (seconds, ratios).

    Raises:
        ConfigurationError: If the value is missing (without default), malformed or out of range
    """
    value_str = os.getenv(name)
    if not value_str:
        if default is None:
            raise ConfigurationError(f"Missing required numeric environment variable: {name}")
        return default

    try:
        value = float(value_str)
    except ValueError:
        raise ConfigurationError(
            f"Invalid numeric value for {name}: '{value_str}'\n"
            f"Expected a number."
        )

    _check_range(name, value, min_value, max_value)
    return value


def validate_bool_env(name: str, default: bool = False) -> bool:
    """
    Validate a boolean environment variable.

    Accepts: true, false, yes, no, 1, 0 (case-insensitive)
    """
    value_str = os.getenv(name)
    if not value_str:
        return default

    value_lower = value_str.lower()
    if value_lower in ("true", "yes", "1"):
        return True
    elif value_lower in ("false", "no", "0"):
        return False
    raise ConfigurationError(
        f"Invalid boolean value for {name}: '{value_str}'\n"
        f"Expected one of: true, false, yes, no, 1, 0"
    )


def validate_choice_env(name: str, choices: List[str], default: Optional[str] = None) -> str:
    """
    Validate an environment variable against allowed choices (case-insensitive).

    Returns:
        The lower-cased value
    """
    value = os.getenv(name)
    if not value:
        if default is None:
            raise ConfigurationError(f"Missing required environment variable: {name}")
        return default

    normalized = value.strip().lower()
    if normalized not in [c.lower() for c in choices]:
        raise ConfigurationError(
            f"Invalid value for {name}: '{value}'\n"
            f"Allowed values: {', '.join(choices)}"
        )
    return normalized


def _check_range(name, value, min_value, max_value) -> None:
    if min_value is not None and value < min_value:
        raise ConfigurationError(
            f"Value for {name} ({value}) is below minimum allowed value ({min_value})"
        )
    if max_value is not None and value > max_value:
        raise ConfigurationError(
            f"Value for {name} ({value}) exceeds maximum allowed value ({max_value})"
        )
