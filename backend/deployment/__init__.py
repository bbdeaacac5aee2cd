"""
Deployment module for Shipgate

Drives one deployment event through validation, build, secret scanning,
policy gating, push and cleanup.

Components:
    - types: Requests, image references, results and the run record
    - state_machine: Pipeline state transitions
    - policy_engine: Branch / non-root / secret-scan gate rules
    - secret_scanner: Default hardcoded-secret scanner for build contexts
    - image_gateway: Build/push/remove through the external builder
    - compose_loader: Image list from a docker-compose.yml
    - pipeline: The orchestrator tying the above together
"""

from .types import (
    BuildResult,
    DeploymentRequest,
    ImageRef,
    PipelineRun,
    PipelineState,
    PolicyDecision,
    PushResult,
    ScanMatch,
    ScanResult,
)
from .state_machine import PipelineStateMachine
from .policy_engine import PolicyEngine, is_root_user
from .secret_scanner import RegexSecretScanner
from .image_gateway import DockerImageGateway, ImageBuilderGateway
from .compose_loader import ComposeLoader, ComposeParseError
from .pipeline import DeploymentPipeline

__all__ = [
    "BuildResult",
    "DeploymentRequest",
    "ImageRef",
    "PipelineRun",
    "PipelineState",
    "PolicyDecision",
    "PushResult",
    "ScanMatch",
    "ScanResult",
    "PipelineStateMachine",
    "PolicyEngine",
    "is_root_user",
    "RegexSecretScanner",
    "DockerImageGateway",
    "ImageBuilderGateway",
    "ComposeLoader",
    "ComposeParseError",
    "DeploymentPipeline",
]
