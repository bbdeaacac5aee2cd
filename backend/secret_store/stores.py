"""
Secret store adapters.

Resolves named secrets from an external provider into in-memory Secret
objects. Stores only read; nothing is ever written back to the provider.

Supported sources:
    - env:    environment variable <prefix><NAME>
    - file:   <secrets_dir>/<NAME>, optionally Fernet-encrypted at rest
    - vendor: HTTP credential store (GET <base_url>/secrets/<NAME>)

Failure messages name the secret, never its location's content or value.

Usage:
    store = create_secret_store('file', secrets_dir='/run/secrets')
    secret = store.resolve('REGISTRY_PASSWORD')
"""

import logging
import os
import re
from abc import ABC, abstractmethod
from typing import Dict, Iterable, Optional

import httpx
from cryptography.fernet import Fernet, InvalidToken

from errors import SecretNotFound
from .models import Secret, SecretSource

logger = logging.getLogger(__name__)

SECRET_NAME_PATTERN = re.compile(r'^[A-Za-z0-9_.-]+$')


def validate_secret_name(name: str) -> None:
    """
    Reject names that could escape the secrets directory or aren't valid
    environment variable / vendor keys.

    Raises:
        SecretNotFound: If the name is malformed
    """
    if not name or name in ('.', '..') or not SECRET_NAME_PATTERN.match(name):
        raise SecretNotFound(name or '<empty>', "invalid secret name")


class SecretStore(ABC):
    """Read-only view over a secret provider."""

    source: SecretSource

    @abstractmethod
    def _read(self, name: str) -> Optional[bytes]:
        """Return the raw value, or None when the provider has no such secret."""

    def resolve(self, name: str) -> Secret:
        """
        Resolve a secret by name.

        Args:
            name: Secret name

        Returns:
            Secret holding the value

        Raises:
            SecretNotFound: If the secret doesn't exist or can't be read
        """
        validate_secret_name(name)
        value = self._read(name)
        if value is None:
            raise SecretNotFound(name)
        logger.debug(f"Resolved secret '{name}' from {self.source.value}")
        return Secret.from_bytes(name, self.source, value)


class EnvSecretStore(SecretStore):
    """Secrets passed as environment variables (GitHub Actions, Jenkins credentials binding)."""

    source = SecretSource.ENV_VAR

    def __init__(self, prefix: str = '', environ: Optional[Dict[str, str]] = None):
        self.prefix = prefix
        self._environ = environ if environ is not None else os.environ

    def _read(self, name: str) -> Optional[bytes]:
        value = self._environ.get(f"{self.prefix}{name}")
        if not value:
            return None
        return value.encode('utf-8')


class FileSecretStore(SecretStore):
    """
    Secrets mounted as files, one file per secret.

    Matches the Docker swarm / Kubernetes layout (/run/secrets/<name>).
    A single trailing newline is stripped since most tooling writes one.
    When a Fernet key is given, file contents are treated as Fernet tokens.
    """

    source = SecretSource.FILE

    def __init__(self, secrets_dir: str, encryption_key: Optional[str] = None):
        self.secrets_dir = secrets_dir
        self._fernet = None
        if encryption_key:
            if isinstance(encryption_key, str):
                encryption_key = encryption_key.encode()
            self._fernet = Fernet(encryption_key)

    def _read(self, name: str) -> Optional[bytes]:
        path = os.path.join(self.secrets_dir, name)
        if not os.path.isfile(path):
            return None

        try:
            with open(path, 'rb') as f:
                data = f.read()
        except OSError as e:
            # errno only, the path is fine to log but the content never is
            raise SecretNotFound(name, f"unreadable ({e.strerror})")

        if self._fernet is not None:
            try:
                data = self._fernet.decrypt(data.strip())
            except InvalidToken:
                raise SecretNotFound(name, "decryption failed")

        if data.endswith(b'\r\n'):
            data = data[:-2]
        elif data.endswith(b'\n'):
            data = data[:-1]
        return data


class VendorSecretStore(SecretStore):
    """
    Secrets held by a CI vendor / vault HTTP API.

    Expects GET <base_url>/secrets/<name> to answer 200 with
    {"value": "<secret>"}, or 404 when the secret doesn't exist.
    """

    source = SecretSource.VENDOR_API

    def __init__(self, base_url: str, token: Optional[str] = None, timeout: float = 10.0,
                 client: Optional[httpx.Client] = None):
        self.base_url = base_url.rstrip('/')
        self._headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = client or httpx.Client(timeout=timeout)

    def _read(self, name: str) -> Optional[bytes]:
        try:
            response = self._client.get(f"{self.base_url}/secrets/{name}", headers=self._headers)
        except httpx.HTTPError as e:
            raise SecretNotFound(name, f"vendor API unreachable ({type(e).__name__})")

        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise SecretNotFound(name, f"vendor API returned {response.status_code}")

        try:
            body = response.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            raise SecretNotFound(name, "vendor API returned malformed body")

        value = body.get('value')
        if value is None or value == '':
            return None
        if not isinstance(value, str):
            raise SecretNotFound(name, "vendor API returned malformed body")
        return value.encode('utf-8')

    def close(self) -> None:
        self._client.close()


def create_secret_store(
    source: str,
    secrets_dir: Optional[str] = None,
    env_prefix: str = '',
    encryption_key: Optional[str] = None,
    vendor_url: Optional[str] = None,
    vendor_token: Optional[str] = None,
) -> SecretStore:
    """
    Build the store selected by configuration.

    Raises:
        ValueError: If the source is unknown or missing its settings
    """
    if source == SecretSource.ENV_VAR.value:
        return EnvSecretStore(prefix=env_prefix)
    if source == SecretSource.FILE.value:
        if not secrets_dir:
            raise ValueError("File secret source requires a secrets directory")
        return FileSecretStore(secrets_dir, encryption_key=encryption_key)
    if source == SecretSource.VENDOR_API.value:
        if not vendor_url:
            raise ValueError("Vendor secret source requires a base URL")
        return VendorSecretStore(vendor_url, token=vendor_token)
    raise ValueError(f"Unknown secret source: {source}")


class RunSecrets:
    """
    Secrets scoped to one pipeline run.

    Each name is resolved at most once; destroy_all() zeroes every value
    resolved through this scope.
    """

    def __init__(self, store: SecretStore):
        self._store = store
        self._secrets: Dict[str, Secret] = {}

    def get(self, name: str) -> Secret:
        secret = self._secrets.get(name)
        if secret is None:
            secret = self._store.resolve(name)
            self._secrets[name] = secret
        return secret

    def resolve_all(self, names: Iterable[str]) -> Dict[str, Secret]:
        return {name: self.get(name) for name in names}

    @property
    def names(self):
        return list(self._secrets)

    def destroy_all(self) -> None:
        for secret in self._secrets.values():
            secret.destroy()
        count = len(self._secrets)
        self._secrets.clear()
        if count:
            logger.debug(f"Destroyed {count} run-scoped secret(s)")
