"""
Shared types for the deployment pipeline.

This module contains the dataclasses passed between the pipeline, the policy
engine and the image gateway so every component agrees on one shape.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Iterable, List, Optional, Tuple

from utils.image_ref import split_image_reference


class PipelineState(str, Enum):
    """States of a pipeline run."""
    PENDING = "pending"
    VALIDATING = "validating"
    BUILDING = "building"
    SCANNING = "scanning"
    GATING = "gating"
    PUSHING = "pushing"
    CLEANUP = "cleanup"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class ImageRef:
    """
    One image taking part in a deployment.

    runtime_user is the user the container runs as (Dockerfile USER,
    compose `user:`). Empty means "image default", which for Docker is root.
    """
    repository: str
    tag: str = ""
    runtime_user: str = ""
    build_context: Optional[str] = None

    @classmethod
    def parse(cls, reference: str, runtime_user: str = "", build_context: Optional[str] = None) -> 'ImageRef':
        """Build an ImageRef from "repository[:tag]"."""
        repository, tag = split_image_reference(reference)
        return cls(repository=repository, tag=tag or "", runtime_user=runtime_user, build_context=build_context)

    @property
    def reference(self) -> str:
        return f"{self.repository}:{self.tag}" if self.tag else self.repository

    def with_tag(self, tag: str) -> 'ImageRef':
        return replace(self, tag=tag)

    def with_runtime_user(self, runtime_user: str) -> 'ImageRef':
        return replace(self, runtime_user=runtime_user)


@dataclass(frozen=True)
class DeploymentRequest:
    """
    A request to build, gate and push a set of images.

    Immutable once created. Duplicate image references collapse onto the
    first occurrence; request order is kept.
    """
    branch: str
    commit_sha: str = ""
    requested_tag: str = ""
    images: Tuple[ImageRef, ...] = ()

    def __post_init__(self):
        unique = []
        seen = set()
        for image in self.images:
            key = (image.repository, image.tag)
            if key in seen:
                continue
            seen.add(key)
            unique.append(image)
        object.__setattr__(self, 'images', tuple(unique))

    @classmethod
    def create(cls, branch: str, images: Iterable[ImageRef], commit_sha: str = "",
               requested_tag: str = "") -> 'DeploymentRequest':
        return cls(branch=branch, commit_sha=commit_sha, requested_tag=requested_tag, images=tuple(images))


@dataclass(frozen=True)
class ScanMatch:
    """A suspected hardcoded secret. Never carries the matched text."""
    path: str
    line: int
    rule: str


@dataclass(frozen=True)
class ScanResult:
    """Result of a secret scan over the build contexts."""
    match_count: int = 0
    matches: Tuple[ScanMatch, ...] = ()

    @classmethod
    def from_matches(cls, matches: Iterable[ScanMatch]) -> 'ScanResult':
        matches = tuple(matches)
        return cls(match_count=len(matches), matches=matches)

    @property
    def clean(self) -> bool:
        return self.match_count == 0


@dataclass(frozen=True)
class PolicyDecision:
    """Gate decision for one request. allowed is True iff reasons is empty."""
    allowed: bool
    reasons: Tuple[str, ...] = ()

    @classmethod
    def from_reasons(cls, reasons: Iterable[str]) -> 'PolicyDecision':
        reasons = tuple(reasons)
        return cls(allowed=not reasons, reasons=reasons)


@dataclass
class BuildResult:
    """Result of building one image."""
    success: bool
    sha256: Optional[str] = None
    log_ref: Optional[str] = None
    runtime_user: Optional[str] = None  # Config.User of the built image, when the builder reports it


@dataclass
class PushResult:
    """
    Result of pushing one image.

    Returned by the gateway on success; the pipeline also creates failure
    results so the run can report which subset of a batch made it.
    """
    repository: str
    tag: str
    success: bool
    digest: Optional[str] = None
    error: Optional[str] = None
    skipped: bool = False

    @classmethod
    def success_result(cls, image: ImageRef, digest: Optional[str] = None) -> 'PushResult':
        return cls(repository=image.repository, tag=image.tag, success=True, digest=digest)

    @classmethod
    def failure_result(cls, image: ImageRef, error: str) -> 'PushResult':
        return cls(repository=image.repository, tag=image.tag, success=False, error=error)

    @classmethod
    def skipped_result(cls, image: ImageRef) -> 'PushResult':
        return cls(repository=image.repository, tag=image.tag, success=False, skipped=True)


@dataclass
class PipelineRun:
    """
    Record of one pipeline run.

    Owned by DeploymentPipeline while active; handed back to the caller
    once the run reaches a terminal state.
    """
    run_id: str
    request: DeploymentRequest
    state: PipelineState = PipelineState.PENDING
    decisions: List[PolicyDecision] = field(default_factory=list)
    reasons: List[str] = field(default_factory=list)
    images: List[ImageRef] = field(default_factory=list)  # Resolved (tagged, inspected) images
    build_results: dict = field(default_factory=dict)  # repository:tag -> BuildResult
    push_results: List[PushResult] = field(default_factory=list)
    scan_result: Optional[ScanResult] = None
    dry_run: bool = False
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    @property
    def succeeded(self) -> bool:
        return self.state == PipelineState.COMPLETED

    @property
    def pushed(self) -> List[PushResult]:
        return [r for r in self.push_results if r.success]
