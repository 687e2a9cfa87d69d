"""
Configuration management for Proofline.

This module handles loading, validating, and saving configuration settings,
as well as encryption of integration configuration at rest.
"""

from proofline.config.credentials import (
    ConfigCipher,
    DecryptionError,
    SecretsError,
)
from proofline.config.settings import (
    ConfigurationError,
    Settings,
    load_config,
    save_config,
)

__all__ = [
    # Settings
    "Settings",
    "load_config",
    "save_config",
    "ConfigurationError",
    # Secrets
    "ConfigCipher",
    "SecretsError",
    "DecryptionError",
]
