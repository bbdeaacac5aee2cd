"""
Test doubles for Shipgate collaborators.

Import these in tests via: from tests.fakes import FakeGateway, StubScanner
"""

import threading
import time
from typing import Callable, Dict, List, Optional

from deployment.image_gateway import ImageBuilderGateway
from deployment.types import BuildResult, ImageRef, PushResult, ScanResult

REGISTRY_USERNAME = "ci-bot"
REGISTRY_PASSWORD = "s3cr3t-registry-pw-9f2c"


class FakeGateway(ImageBuilderGateway):
    """
    Gateway double.

    build_errors / push_errors map repository -> list of exceptions raised
    on successive attempts (consumed in order; an empty list means success).
    runtime_users maps repository -> Config.User reported by the "build".
    on_build / on_push are called (from the worker thread) before each build
    or push attempt finishes.
    """

    def __init__(self, **kwargs):
        kwargs.setdefault('sleep', lambda seconds: None)
        super().__init__(**kwargs)
        self.build_errors: Dict[str, List[Exception]] = {}
        self.push_errors: Dict[str, List[Exception]] = {}
        self.remove_errors: Dict[str, Exception] = {}
        self.runtime_users: Dict[str, Optional[str]] = {}
        self.on_build: Optional[Callable[[ImageRef], None]] = None
        self.on_push: Optional[Callable[[ImageRef], None]] = None
        self.built: List[str] = []
        self.pushed: List[str] = []
        self.removed: List[str] = []
        self.auth_configs: List[Optional[Dict[str, str]]] = []
        self.build_attempts: Dict[str, int] = {}
        self.push_attempts: Dict[str, int] = {}
        self._lock = threading.Lock()

    def _build_once(self, image: ImageRef) -> BuildResult:
        with self._lock:
            self.build_attempts[image.repository] = self.build_attempts.get(image.repository, 0) + 1
            errors = self.build_errors.get(image.repository) or []
            error = errors.pop(0) if errors else None
        if self.on_build is not None:
            self.on_build(image)
        if error is not None:
            raise error
        with self._lock:
            self.built.append(image.reference)
        return BuildResult(
            success=True,
            sha256=f"sha256:{image.repository.replace('/', '-')}",
            runtime_user=self.runtime_users.get(image.repository),
        )

    def _push_once(self, image: ImageRef, auth_config: Optional[Dict[str, str]]) -> PushResult:
        with self._lock:
            self.push_attempts[image.repository] = self.push_attempts.get(image.repository, 0) + 1
            self.auth_configs.append(auth_config)
            errors = self.push_errors.get(image.repository) or []
            error = errors.pop(0) if errors else None
        if self.on_push is not None:
            self.on_push(image)
        if error is not None:
            raise error
        with self._lock:
            self.pushed.append(image.reference)
        return PushResult.success_result(image, digest=f"sha256:digest-{image.tag}")

    def remove(self, image: ImageRef) -> None:
        error = self.remove_errors.get(image.repository)
        if error is not None:
            raise error
        self.removed.append(image.reference)


class StubScanner:
    """Scanner double returning a fixed result."""

    def __init__(self, result: Optional[ScanResult] = None, error: Optional[Exception] = None,
                 delay: float = 0.0):
        self.result = result if result is not None else ScanResult()
        self.error = error
        self.delay = delay
        self.targets = None

    def scan(self, targets):
        self.targets = list(targets)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result
