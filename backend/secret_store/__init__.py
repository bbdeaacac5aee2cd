"""
Secret store module for Shipgate

Resolves registry credentials and other run-time secrets from environment
variables, mounted files or a vendor credential API.
"""

from .models import Secret, SecretSource
from .stores import (
    SecretStore,
    EnvSecretStore,
    FileSecretStore,
    VendorSecretStore,
    RunSecrets,
    create_secret_store,
    validate_secret_name,
)

__all__ = [
    "Secret",
    "SecretSource",
    "SecretStore",
    "EnvSecretStore",
    "FileSecretStore",
    "VendorSecretStore",
    "RunSecrets",
    "create_secret_store",
    "validate_secret_name",
]
