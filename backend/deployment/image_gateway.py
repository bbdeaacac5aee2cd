"""
Image builder gateway for Shipgate

Thin interface to the external image builder / registry. Shipgate does not
construct images itself; it asks the builder to build, push and remove them
and interprets the outcome.

Retry policy:
    Transient failures (engine/registry 5xx, 408, 429, dropped connections,
    read timeouts) are retried up to ``max_retries`` times with exponential
    backoff (base 2s: 2s, 4s, ...). Auth failures (401/403, "unauthorized",
    "denied") and permanent failures (malformed tag, Dockerfile error) are
    raised immediately.

Credentials are passed to the registry as ``auth_config`` and never logged.
"""

import logging
import os
import re
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, TypeVar

import docker
import requests

from errors import AuthFailed, BuildFailed, PushFailed
from secret_store import Secret
from utils.image_ref import registry_for
from .types import BuildResult, ImageRef, PushResult

logger = logging.getLogger(__name__)

T = TypeVar('T')

TRANSIENT = 'transient'
AUTH = 'auth'
PERMANENT = 'permanent'

TRANSIENT_STATUS_CODES = {408, 429, 500, 502, 503, 504}
AUTH_STATUS_CODES = {401, 403}

AUTH_MESSAGE_PATTERN = re.compile(r'(?i)unauthorized|authentication required|denied|forbidden|no basic auth credentials')
TRANSIENT_MESSAGE_PATTERN = re.compile(
    r'(?i)timeout|timed out|connection reset|connection refused|broken pipe|unexpected eof|'
    r'\beof\b|tls handshake|temporary failure|service unavailable|bad gateway|toomanyrequests'
)


def classify_docker_error(exc: BaseException) -> str:
    """
    Classify an error raised by the Docker SDK.

    Args:
        exc: Exception raised by a docker-py call

    Returns:
        One of TRANSIENT, AUTH, PERMANENT
    """
    if isinstance(exc, (requests.exceptions.ConnectionError, requests.exceptions.Timeout)):
        return TRANSIENT

    if isinstance(exc, docker.errors.APIError):
        status = exc.status_code
        if status in AUTH_STATUS_CODES:
            return AUTH
        if status in TRANSIENT_STATUS_CODES:
            return TRANSIENT
        if status is None:
            return classify_error_message(str(exc))
        return PERMANENT

    if isinstance(exc, docker.errors.BuildError):
        # The Dockerfile itself failed; unless the engine lost the network mid-build
        return TRANSIENT if TRANSIENT_MESSAGE_PATTERN.search(str(exc.msg)) else PERMANENT

    return PERMANENT


def classify_error_message(message: str) -> str:
    """Classify an error reported inside a build/push progress stream."""
    if AUTH_MESSAGE_PATTERN.search(message or ''):
        return AUTH
    if TRANSIENT_MESSAGE_PATTERN.search(message or ''):
        return TRANSIENT
    return PERMANENT


class ImageBuilderGateway(ABC):
    """
    Contract between the pipeline and the external builder.

    build() raises BuildFailed, push() raises PushFailed or AuthFailed.
    Subclasses raise with ``transient=True`` for retryable failures and
    let _with_retries() decide whether to try again.
    """

    def __init__(self, max_retries: int = 2, retry_base_delay: float = 2.0,
                 sleep: Callable[[float], None] = time.sleep):
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self._sleep = sleep

    @abstractmethod
    def _build_once(self, image: ImageRef) -> BuildResult:
        ...

    @abstractmethod
    def _push_once(self, image: ImageRef, auth_config: Optional[Dict[str, str]]) -> PushResult:
        ...

    @abstractmethod
    def remove(self, image: ImageRef) -> None:
        """Remove the local copy of a built image. Best-effort; callers log failures."""

    def build(self, image: ImageRef) -> BuildResult:
        """
        Build one image, retrying transient failures.

        Raises:
            BuildFailed: On permanent failure or when retries are exhausted
        """
        return self._with_retries(lambda: self._build_once(image), f"build {image.reference}")

    def push(self, image: ImageRef, credentials: Optional[Dict[str, Secret]] = None) -> PushResult:
        """
        Push one image, retrying transient failures.

        Args:
            image: Image to push (repository:tag must already exist locally)
            credentials: {"username": Secret, "password": Secret}, or None for anonymous

        Raises:
            AuthFailed: Registry rejected the credentials (never retried)
            PushFailed: On permanent failure or when retries are exhausted
        """
        auth_config = None
        if credentials:
            auth_config = {key: secret.reveal_text() for key, secret in credentials.items()}
        return self._with_retries(lambda: self._push_once(image, auth_config), f"push {image.reference}")

    def _with_retries(self, operation: Callable[[], T], description: str) -> T:
        attempt = 0
        while True:
            try:
                return operation()
            except (BuildFailed, PushFailed) as e:
                if isinstance(e, AuthFailed) or not e.transient or attempt >= self.max_retries:
                    raise
                delay = self.retry_base_delay * (2 ** attempt)
                attempt += 1
                logger.warning(
                    f"Transient failure during {description} (attempt {attempt}/{self.max_retries + 1}), "
                    f"retrying in {delay:g}s: {e}"
                )
                self._sleep(delay)


class DockerImageGateway(ImageBuilderGateway):
    """
    Gateway backed by a Docker Engine through the docker SDK.

    Usage:
        gateway = DockerImageGateway(docker.from_env())
        result = gateway.build(ImageRef("registry.example.com/be", "1.4.0", build_context="./be"))
    """

    def __init__(self, client: docker.DockerClient, log_dir: Optional[str] = None, **kwargs):
        super().__init__(**kwargs)
        self.client = client
        self.log_dir = log_dir

    def _build_once(self, image: ImageRef) -> BuildResult:
        context = image.build_context or '.'
        logger.info(f"Building {image.reference} from {context}")

        try:
            built, log_stream = self.client.images.build(path=context, tag=image.reference, rm=True)
        except docker.errors.BuildError as e:
            kind = classify_docker_error(e)
            self._write_build_log(image, e.build_log)
            raise BuildFailed(image.repository, f"Build failed for {image.reference}: {e.msg}",
                              transient=kind == TRANSIENT)
        except (docker.errors.APIError, requests.exceptions.RequestException) as e:
            kind = classify_docker_error(e)
            raise BuildFailed(image.repository, f"Builder error for {image.reference}: {e}",
                              transient=kind == TRANSIENT)

        log_ref = self._write_build_log(image, log_stream)
        config = (built.attrs or {}).get('Config') or {}

        logger.info(f"Built {image.reference} ({built.id})")
        return BuildResult(
            success=True,
            sha256=built.id,
            log_ref=log_ref,
            runtime_user=config.get('User'),
        )

    def _push_once(self, image: ImageRef, auth_config: Optional[Dict[str, str]]) -> PushResult:
        logger.info(f"Pushing {image.reference} to {registry_for(image.repository)}")

        digest = None
        try:
            stream = self.client.images.push(
                image.repository,
                tag=image.tag,
                auth_config=auth_config,
                stream=True,
                decode=True,
            )
            for line in stream:
                error = line.get('error') or (line.get('errorDetail') or {}).get('message')
                if error:
                    self._raise_push_error(image, classify_error_message(error), error)
                aux = line.get('aux') or {}
                if aux.get('Digest'):
                    digest = aux['Digest']
        except (docker.errors.APIError, requests.exceptions.RequestException) as e:
            self._raise_push_error(image, classify_docker_error(e), str(e))

        logger.info(f"Pushed {image.reference}{f' ({digest})' if digest else ''}")
        return PushResult.success_result(image, digest=digest)

    def _raise_push_error(self, image: ImageRef, kind: str, message: str):
        if kind == AUTH:
            raise AuthFailed(image.repository, f"Registry rejected credentials for {image.reference}: {message}")
        raise PushFailed(image.repository, f"Push failed for {image.reference}: {message}",
                         transient=kind == TRANSIENT)

    def remove(self, image: ImageRef) -> None:
        self.client.images.remove(image.reference, noprune=False)
        logger.debug(f"Removed local image {image.reference}")

    def _write_build_log(self, image: ImageRef, log_stream) -> Optional[str]:
        """Persist build output next to the pipeline logs. Returns the file path."""
        if not self.log_dir or log_stream is None:
            return None

        safe_name = re.sub(r'[^A-Za-z0-9_.-]', '_', image.reference)
        path = os.path.join(self.log_dir, f"build-{safe_name}.log")
        try:
            os.makedirs(self.log_dir, exist_ok=True)
            with open(path, 'w', encoding='utf-8') as f:
                for chunk in log_stream:
                    text = chunk.get('stream') or chunk.get('error') or ''
                    if text:
                        f.write(text)
        except OSError as e:
            logger.warning(f"Could not write build log for {image.reference}: {e}")
            return None
        return path
