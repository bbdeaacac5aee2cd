"""
Deployment pipeline for Shipgate

Coordinates one deployment request through
validate -> build -> scan -> gate -> push -> cleanup, recording every
transition in the audit log.

Integrates with:
- PipelineStateMachine for transition rules and timestamps
- SecretStore (through a run-scoped RunSecrets) for registry credentials
- PolicyEngine for the gate decision
- ImageBuilderGateway for build/push/remove
- A secret scanner collaborator (anything with scan(targets) -> ScanResult)
- AuditLog for the append-only trail

Usage:
    pipeline = DeploymentPipeline(store, gateway, scanner, audit_log)
    run = await pipeline.run(request)
    if run.state == PipelineState.FAILED:
        print(run.reasons)

Only one run is active per pipeline instance; a second request while one
is running raises PipelineBusy. cancel() takes effect at the next
transition boundary, never in the middle of a build or push.
"""

import asyncio
import logging
import secrets
import threading
from typing import Dict, List, Optional

from audit import AuditAction, AuditLog, log_decision, log_image_event, log_transition
from errors import (
    InvalidRequest,
    OperationTimeout,
    PipelineBusy,
    PipelineCancelled,
    PipelineError,
    PolicyViolation,
    ScanUnavailable,
)
from secret_store import RunSecrets, Secret, SecretStore
from utils.async_docker import async_docker_call
from utils.image_ref import is_valid_repository, is_valid_tag
from .image_gateway import ImageBuilderGateway
from .policy_engine import PolicyEngine
from .state_machine import PipelineStateMachine
from .types import (
    BuildResult,
    DeploymentRequest,
    ImageRef,
    PipelineRun,
    PipelineState,
    PushResult,
    ScanResult,
)

logger = logging.getLogger(__name__)

# Default per-operation budget (one image build, one scan, one image push)
DEFAULT_OPERATION_TIMEOUT = 15 * 60

DEFAULT_REGISTRY_CREDENTIALS = {
    'username': 'REGISTRY_USERNAME',
    'password': 'REGISTRY_PASSWORD',
}


class DeploymentPipeline:
    """
    State machine driver for deployment runs.

    Builds of independent images run concurrently (bounded by
    build_concurrency), as do pushes (push_concurrency). The gate decision
    covers every image before the first push starts.
    """

    def __init__(
        self,
        secret_store: SecretStore,
        gateway: ImageBuilderGateway,
        scanner,
        audit_log: AuditLog,
        policy_engine: Optional[PolicyEngine] = None,
        registry_credentials: Optional[Dict[str, str]] = None,
        operation_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        build_concurrency: int = 4,
        push_concurrency: int = 1,
        remove_local_images: bool = True,
    ):
        """
        Initialize deployment pipeline.

        Args:
            secret_store: Source for registry credentials
            gateway: External builder/registry gateway
            scanner: Secret scanner collaborator
            audit_log: Append-only audit log
            policy_engine: Gate rules (defaults to deploy branch "main")
            registry_credentials: {"username": secret name, "password": secret name};
                an empty dict pushes anonymously
            operation_timeout: Seconds allowed for one build, scan or push
            build_concurrency: Max images building at once
            push_concurrency: Max images pushing at once
            remove_local_images: Remove built images during cleanup
        """
        self.secret_store = secret_store
        self.gateway = gateway
        self.scanner = scanner
        self.audit_log = audit_log
        self.policy_engine = policy_engine or PolicyEngine()
        self.registry_credentials = (
            DEFAULT_REGISTRY_CREDENTIALS if registry_credentials is None else registry_credentials
        )
        self.operation_timeout = operation_timeout
        self.build_concurrency = build_concurrency
        self.push_concurrency = push_concurrency
        self.remove_local_images = remove_local_images
        self.state_machine = PipelineStateMachine()

        self._run_lock = threading.Lock()
        self._cancel_requested = threading.Event()
        self._in_flight = set()
        self.current_run: Optional[PipelineRun] = None
        self.last_run: Optional[PipelineRun] = None

    @property
    def busy(self) -> bool:
        return self._run_lock.locked()

    def cancel(self) -> bool:
        """
        Request cancellation of the active run.

        Returns:
            True if a run was active and will stop at its next transition
        """
        if not self.busy:
            return False
        self._cancel_requested.set()
        logger.info("Cancellation requested for active run")
        return True

    async def run(self, request: DeploymentRequest, dry_run: bool = False) -> PipelineRun:
        """
        Execute one deployment request to a terminal state.

        Args:
            request: The deployment request
            dry_run: Build, scan and gate, but skip every push

        Returns:
            The finished PipelineRun (state completed or failed)

        Raises:
            PipelineBusy: If another run is active on this pipeline
        """
        if not self._run_lock.acquire(blocking=False):
            logger.warning("Rejected deployment request: pipeline busy")
            raise PipelineBusy("A pipeline run is already active")

        run = PipelineRun(run_id=secrets.token_hex(6), request=request, dry_run=dry_run)
        self.current_run = run
        self._cancel_requested.clear()
        run_secrets = RunSecrets(self.secret_store)

        logger.info(
            f"Run {run.run_id} accepted: branch '{request.branch}', "
            f"{len(request.images)} image(s){' (dry run)' if dry_run else ''}"
        )

        try:
            try:
                await self._execute(run, run_secrets)
            except PipelineError as e:
                logger.error(f"Run {run.run_id} failed in {run.state.value}: {e}")
                self._fail(run, e.reasons)
            except Exception:
                logger.exception(f"Run {run.run_id} hit an unexpected error in {run.state.value}")
                self._fail(run, ["internal-error"])
                raise
            finally:
                # Timed-out operations may still be using the credentials
                await self._drain_in_flight(run)
                run_secrets.destroy_all()
        finally:
            self.current_run = None
            self.last_run = run
            self._cancel_requested.clear()
            self._run_lock.release()

        if run.state == PipelineState.COMPLETED:
            logger.info(f"Run {run.run_id} completed: {len(run.pushed)} image(s) pushed")
        else:
            logger.warning(f"Run {run.run_id} failed: {', '.join(run.reasons)}")
        return run

    async def _execute(self, run: PipelineRun, run_secrets: RunSecrets) -> None:
        # Validate
        self._advance(run, PipelineState.VALIDATING)
        run.images = self._validate(run.request)
        credentials = None
        if not run.dry_run and self.registry_credentials:
            credentials = run_secrets.resolve_all(self.registry_credentials.values())
            credentials = {key: credentials[name] for key, name in self.registry_credentials.items()}

        # Build
        self._advance(run, PipelineState.BUILDING)
        failures = await self._build_all(run)
        if failures:
            self._fail(run, failures)
            return

        # Scan
        self._advance(run, PipelineState.SCANNING)
        run.scan_result = await self._scan(run)

        # Gate
        self._advance(run, PipelineState.GATING)
        decision = self.policy_engine.evaluate(run.request, run.images, run.scan_result)
        run.decisions.append(decision)
        log_decision(self.audit_log, run.run_id, decision.allowed, decision.reasons)
        if not decision.allowed:
            raise PolicyViolation(decision.reasons)

        # Push
        self._advance(run, PipelineState.PUSHING)
        failures = await self._push_all(run, credentials)
        if failures:
            self._fail(run, failures)
            return

        # Cleanup
        self._advance(run, PipelineState.CLEANUP)
        await self._cleanup(run)
        self._advance(run, PipelineState.COMPLETED)

    def _advance(self, run: PipelineRun, to_state: PipelineState) -> None:
        """Move to the next state, honouring a pending cancellation first."""
        if self._cancel_requested.is_set() and to_state != PipelineState.COMPLETED:
            raise PipelineCancelled(f"Run {run.run_id} cancelled before {to_state.value}")

        from_state = run.state
        if not self.state_machine.transition(run, to_state):
            raise RuntimeError(f"Illegal pipeline transition {from_state.value} -> {to_state.value}")
        log_transition(self.audit_log, run.run_id, from_state, to_state)

    def _fail(self, run: PipelineRun, reasons: List[str]) -> None:
        if self.state_machine.is_terminal(run.state):
            return
        run.reasons.extend(reasons)
        from_state = run.state
        self.state_machine.transition(run, PipelineState.FAILED)
        log_transition(self.audit_log, run.run_id, from_state, PipelineState.FAILED, ','.join(reasons))

    def _validate(self, request: DeploymentRequest) -> List[ImageRef]:
        """
        Check request shape and resolve image tags.

        An image without a tag takes the requested tag, falling back to the
        first 12 characters of the commit SHA.

        Raises:
            InvalidRequest: If the request can't be deployed as given
        """
        if not request.branch or not request.branch.strip():
            raise InvalidRequest("Deployment request has no branch")

        if not request.images:
            raise InvalidRequest("Deployment request has no images")

        fallback_tag = request.requested_tag or (request.commit_sha or '')[:12]
        images = []
        for image in request.images:
            if not is_valid_repository(image.repository):
                raise InvalidRequest(f"Invalid repository name: {image.repository!r}")

            tag = image.tag or fallback_tag
            if not is_valid_tag(tag):
                raise InvalidRequest(f"Image {image.repository} has no usable tag ({tag!r})")
            images.append(image.with_tag(tag))
        return images

    async def _run_operation(self, stage: str, func, *args):
        """
        Run one blocking gateway/scanner call under the per-operation timeout.

        The worker thread can't be interrupted, so on timeout the operation
        is tracked as in flight and the run waits for it before releasing
        the pipeline.

        Raises:
            OperationTimeout: With ``pending`` set to the still running future
        """
        future = asyncio.ensure_future(async_docker_call(func, *args))
        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout=self.operation_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"{stage} exceeded {self.operation_timeout:g}s, waiting for it to finish")
            self._in_flight.add(future)
            raise OperationTimeout(stage, self.operation_timeout, pending=future)

    async def _settle(self, future: asyncio.Future):
        """Wait for a timed-out operation. Returns its result, or None if it raised."""
        self._in_flight.discard(future)
        try:
            return await future
        except Exception as e:
            logger.warning(f"Timed-out operation failed after its deadline: {e}")
            return None

    async def _drain_in_flight(self, run: PipelineRun) -> None:
        if not self._in_flight:
            return
        logger.info(f"Run {run.run_id} waiting for {len(self._in_flight)} timed-out operation(s)")
        while self._in_flight:
            await self._settle(self._in_flight.pop())

    async def _build_all(self, run: PipelineRun) -> List[str]:
        """Build every image. Returns failure reasons (empty on success)."""
        semaphore = asyncio.Semaphore(self.build_concurrency)

        async def build_one(image: ImageRef) -> BuildResult:
            async with semaphore:
                return await self._run_operation('build', self.gateway.build, image)

        results = await asyncio.gather(*(build_one(image) for image in run.images), return_exceptions=True)

        failures = []
        built_images = []
        for image, result in zip(run.images, results):
            if isinstance(result, PipelineError):
                logger.error(f"Build of {image.reference} failed: {result}")
                log_image_event(self.audit_log, run.run_id, AuditAction.BUILD, image.repository, result.reason)
                failures.append(result.reason)
                continue
            if isinstance(result, BaseException):
                raise result

            run.build_results[image.reference] = result
            log_image_event(self.audit_log, run.run_id, AuditAction.BUILD, image.repository)

            # An explicit runtime user (compose user:, --user) overrides the image's USER
            if not image.runtime_user and result.runtime_user is not None:
                image = image.with_runtime_user(result.runtime_user)
            built_images.append(image)

        if not failures:
            run.images = built_images
        return failures

    async def _scan(self, run: PipelineRun) -> ScanResult:
        targets = list(dict.fromkeys(image.build_context or '.' for image in run.images))
        try:
            result = await self._run_operation('scan', self.scanner.scan, targets)
        except PipelineError:
            raise
        except Exception as e:
            raise ScanUnavailable(f"Secret scanner failed: {e}") from e

        if result is None:
            raise ScanUnavailable("Secret scanner returned no result")
        return result

    async def _push_all(self, run: PipelineRun, credentials: Optional[Dict[str, Secret]]) -> List[str]:
        """
        Push every image. Returns failure reasons (empty on success).

        Pushes are not transactional: images pushed before a failure stay in
        the registry and are reported as pushed.
        """
        if run.dry_run:
            for image in run.images:
                run.push_results.append(PushResult.skipped_result(image))
                log_image_event(self.audit_log, run.run_id, AuditAction.PUSH, image.repository, 'dry-run-skipped')
            return []

        semaphore = asyncio.Semaphore(self.push_concurrency)

        async def push_one(image: ImageRef):
            """Returns (error, result); a timed-out push can have both."""
            async with semaphore:
                try:
                    return None, await self._run_operation('push', self.gateway.push, image, credentials)
                except OperationTimeout as e:
                    # The registry may still take the image after we stop waiting
                    return e, await self._settle(e.pending)
                except PipelineError as e:
                    return e, None

        outcomes = await asyncio.gather(*(push_one(image) for image in run.images), return_exceptions=True)

        # Audit in request order so the trail reads the same on every run
        failures = []
        for image, outcome in zip(run.images, outcomes):
            if isinstance(outcome, BaseException):
                raise outcome
            error, result = outcome

            if isinstance(result, PushResult) and result.success:
                if error is not None:
                    logger.warning(f"Push of {image.reference} finished after its timeout")
                run.push_results.append(result)
                log_image_event(self.audit_log, run.run_id, AuditAction.PUSH, image.repository)
            elif error is not None:
                logger.error(f"Push of {image.reference} failed: {error}")
                run.push_results.append(PushResult.failure_result(image, error.reason))
                log_image_event(self.audit_log, run.run_id, AuditAction.PUSH, image.repository, error.reason)

            if error is not None:
                failures.append(error.reason)

        if failures and run.pushed:
            logger.warning(
                f"Run {run.run_id} left {len(run.pushed)} image(s) pushed: "
                f"{', '.join(f'{r.repository}:{r.tag}' for r in run.pushed)}"
            )
        return failures

    async def _cleanup(self, run: PipelineRun) -> None:
        """Best-effort removal of local build artifacts. Never fails the run."""
        if not self.remove_local_images:
            return

        for image in run.images:
            try:
                await self._run_operation('cleanup', self.gateway.remove, image)
            except Exception as e:
                logger.warning(f"Cleanup of {image.reference} failed: {e}")
                log_image_event(
                    self.audit_log, run.run_id, AuditAction.CLEANUP, image.repository,
                    f"cleanup-failed:{image.repository}",
                )
            else:
                log_image_event(self.audit_log, run.run_id, AuditAction.CLEANUP, image.repository)
