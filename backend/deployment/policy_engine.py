"""
Deployment gate for Shipgate

Decides whether a deployment request may proceed to the push stage:
- Branch rule: only the configured deploy branch ships
- Non-root rule: no image may run as root / uid 0
- Secret-scan rule: the scanner must report zero hardcoded-secret matches
- Floating-tag rule (opt-in): no image may be pushed as :latest

Every rule is evaluated and every violation reported, so one run tells the
user everything that needs fixing. Evaluation is pure: the same inputs always
give the same decision.

Usage:
    engine = PolicyEngine(deploy_branch="main")
    decision = engine.evaluate(request, images, scan_result)

    if not decision.allowed:
        print("Deployment blocked:", ", ".join(decision.reasons))
"""

from typing import List, Sequence
import logging

from .types import DeploymentRequest, ImageRef, PolicyDecision, ScanResult

logger = logging.getLogger(__name__)

ROOT_USER_NAMES = {'root'}


def is_root_user(runtime_user: str) -> bool:
    """
    Check whether a runtime user string resolves to the superuser.

    Accepts the forms Docker accepts for USER / --user:
    "name", "uid", "name:group", "uid:gid". Only the user part matters;
    an empty value means the image default, which is root.

    Examples:
        >>> is_root_user("nextjs")
        False
        >>> is_root_user("0:0")
        True
        >>> is_root_user("1000:0")
        False  # group 0, user 1000
        >>> is_root_user("")
        True
    """
    if runtime_user is None:
        return True

    user = runtime_user.strip().split(':', 1)[0].strip()
    if not user:
        return True

    if user.lower() in ROOT_USER_NAMES:
        return True

    # "0", "00" and friends are all uid 0
    if user.isdigit() and int(user) == 0:
        return True

    return False


class PolicyEngine:
    """
    Evaluates deployment requests against the gate rules.

    Holds configuration only; no state survives between evaluations.
    """

    def __init__(self, deploy_branch: str = "main", forbid_latest_tag: bool = False):
        """
        Args:
            deploy_branch: The only branch allowed to deploy
            forbid_latest_tag: Reject images tagged "latest"
        """
        self.deploy_branch = deploy_branch
        self.forbid_latest_tag = forbid_latest_tag

    def evaluate(
        self,
        request: DeploymentRequest,
        images: Sequence[ImageRef],
        scan_result: ScanResult,
    ) -> PolicyDecision:
        """
        Evaluate all rules and collect every violation.

        Args:
            request: The deployment request (branch is read from here)
            images: Images as built, with their effective runtime user
            scan_result: Result reported by the secret scanner

        Returns:
            PolicyDecision with allowed=True iff no rule was violated

        Examples:
            >>> engine = PolicyEngine()
            >>> request = DeploymentRequest(branch="feature/x")
            >>> engine.evaluate(request, [ImageRef("be", "1", "nextjs")], ScanResult()).reasons
            ('branch-not-main',)
        """
        reasons = []

        # Check branch
        reasons.extend(self._check_branch(request))

        # Check runtime users
        reasons.extend(self._check_runtime_users(images))

        # Check secret scan outcome
        reasons.extend(self._check_scan(scan_result))

        # Check floating tags
        if self.forbid_latest_tag:
            reasons.extend(self._check_floating_tags(images))

        decision = PolicyDecision.from_reasons(reasons)

        if decision.allowed:
            logger.info(f"Gate passed for {len(images)} image(s) on branch '{request.branch}'")
        else:
            logger.warning(f"Gate denied deployment: {', '.join(decision.reasons)}")

        return decision

    def _check_branch(self, request: DeploymentRequest) -> List[str]:
        """Only the deploy branch may ship."""
        if request.branch != self.deploy_branch:
            # Reason string is fixed regardless of the configured branch name
            return ["branch-not-main"]
        return []

    def _check_runtime_users(self, images: Sequence[ImageRef]) -> List[str]:
        """Every image must run as a non-root user."""
        return [
            f"runtime-user-is-root:{image.repository}"
            for image in images
            if is_root_user(image.runtime_user)
        ]

    def _check_scan(self, scan_result: ScanResult) -> List[str]:
        """The scanner must report zero hardcoded-secret matches."""
        if scan_result is None:
            return ["secret-scan-failed:unknown"]
        if scan_result.match_count > 0:
            return [f"secret-scan-failed:{scan_result.match_count}"]
        return []

    def _check_floating_tags(self, images: Sequence[ImageRef]) -> List[str]:
        """Pushing :latest makes the deployed version unrecoverable from the registry."""
        return [
            f"floating-tag:{image.repository}"
            for image in images
            if image.tag == "latest"
        ]
