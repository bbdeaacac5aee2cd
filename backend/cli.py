#!/usr/bin/env python3
"""
Shipgate command line

Usage:
    shipgate run --branch main --image registry.example.com/be --commit $GIT_SHA \\
        --context registry.example.com/be=./backend --user registry.example.com/be=nextjs
    shipgate run --branch main --compose docker-compose.yml --tag 1.4.0 --dry-run
    shipgate audit --run-id 3f9a0c2b1d4e

Exit codes:
    0  run completed
    1  run failed (reasons printed, one per line)
    2  usage or configuration error
    3  another run is active
"""

import argparse
import asyncio
import sys
from typing import Dict, List, Optional

import docker

from audit import DatabaseAuditLog
from config.paths import LOG_DIR
from config.settings import AppConfig, setup_logging
from database import DatabaseManager
from deployment import (
    ComposeLoader,
    ComposeParseError,
    DeploymentPipeline,
    DeploymentRequest,
    DockerImageGateway,
    ImageRef,
    PolicyEngine,
    RegexSecretScanner,
)
from errors import PipelineBusy
from secret_store import create_secret_store

EXIT_COMPLETED = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_BUSY = 3


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="shipgate", description="Shipgate deployment gate")
    parser.add_argument("--log-level", help="Override SHIPGATE_LOG_LEVEL")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Build, gate and push a set of images")
    run.add_argument("--branch", "-b", required=True, help="Branch the deployment comes from")
    run.add_argument("--image", "-i", action="append", default=[], metavar="REPO[:TAG]",
                     help="Image to deploy (repeatable)")
    run.add_argument("--compose", "-f", help="Take images from the build services of a compose file")
    run.add_argument("--commit", default="", help="Commit SHA (first 12 chars tag untagged images)")
    run.add_argument("--tag", "-t", default="", help="Tag for images given without one")
    run.add_argument("--context", action="append", default=[], metavar="REPO=DIR",
                     help="Build context for an image (repeatable, default: current directory)")
    run.add_argument("--user", action="append", default=[], metavar="REPO=USER",
                     help="Declared runtime user for an image (repeatable)")
    run.add_argument("--dry-run", action="store_true", help="Build, scan and gate but push nothing")
    run.add_argument("--keep-images", action="store_true", help="Don't remove local images after pushing")
    run.add_argument("--forbid-latest", action="store_true", help="Reject images tagged 'latest'")

    audit = subparsers.add_parser("audit", help="Print persisted audit records")
    audit.add_argument("--run-id", help="Only show this run")

    return parser


def parse_assignments(values: List[str], option: str) -> Dict[str, str]:
    """
    Parse repeated REPO=VALUE options.

    Raises:
        ValueError: If an item has no '=' or an empty side
    """
    result = {}
    for item in values:
        repository, sep, value = item.partition("=")
        if not sep or not repository or not value:
            raise ValueError(f"{option} expects REPO=VALUE, got {item!r}")
        result[repository] = value
    return result


def build_request(args: argparse.Namespace, loader: Optional[ComposeLoader] = None) -> DeploymentRequest:
    """
    Turn parsed arguments into a DeploymentRequest.

    Compose images come first, then --image entries. --context and --user
    override whatever the compose file declares for the same repository.

    Raises:
        ValueError: On malformed REPO=VALUE options
        ComposeParseError: If the compose file can't be loaded
    """
    contexts = parse_assignments(args.context, "--context")
    users = parse_assignments(args.user, "--user")

    images: List[ImageRef] = []
    if args.compose:
        images.extend((loader or ComposeLoader()).load_images(args.compose))
    images.extend(ImageRef.parse(reference) for reference in args.image)

    resolved = []
    for image in images:
        if image.repository in contexts:
            image = ImageRef(image.repository, image.tag, image.runtime_user, contexts[image.repository])
        if image.repository in users:
            image = image.with_runtime_user(users[image.repository])
        resolved.append(image)

    return DeploymentRequest.create(
        branch=args.branch,
        images=resolved,
        commit_sha=args.commit,
        requested_tag=args.tag,
    )


def build_pipeline(args: argparse.Namespace, audit_log) -> DeploymentPipeline:
    """Wire the production collaborators from AppConfig."""
    store = create_secret_store(
        AppConfig.SECRET_SOURCE,
        secrets_dir=AppConfig.SECRETS_DIR,
        env_prefix=AppConfig.SECRET_ENV_PREFIX,
        encryption_key=AppConfig.SECRET_KEY,
        vendor_url=AppConfig.VENDOR_URL,
        vendor_token=AppConfig.VENDOR_TOKEN,
    )
    gateway = DockerImageGateway(
        docker.from_env(),
        log_dir=LOG_DIR,
        max_retries=AppConfig.MAX_RETRIES,
        retry_base_delay=AppConfig.RETRY_BASE_DELAY,
    )
    policy = PolicyEngine(
        deploy_branch=AppConfig.DEPLOY_BRANCH,
        forbid_latest_tag=AppConfig.FORBID_LATEST_TAG or args.forbid_latest,
    )
    return DeploymentPipeline(
        store,
        gateway,
        RegexSecretScanner(),
        audit_log,
        policy_engine=policy,
        registry_credentials={
            'username': AppConfig.REGISTRY_USER_SECRET,
            'password': AppConfig.REGISTRY_PASSWORD_SECRET,
        },
        operation_timeout=AppConfig.OPERATION_TIMEOUT,
        build_concurrency=AppConfig.BUILD_CONCURRENCY,
        push_concurrency=AppConfig.PUSH_CONCURRENCY,
        remove_local_images=not args.keep_images,
    )


def print_run(run) -> None:
    """Summary on stdout; logs go to stderr."""
    print(f"run {run.run_id}: {run.state.value}")
    for result in run.push_results:
        if result.skipped:
            print(f"  skipped {result.repository}:{result.tag} (dry run)")
        elif result.success:
            print(f"  pushed  {result.repository}:{result.tag} {result.digest or ''}".rstrip())
        else:
            print(f"  failed  {result.repository}:{result.tag}")
    for reason in run.reasons:
        print(reason)


def cmd_run(args: argparse.Namespace, db: DatabaseManager) -> int:
    try:
        request = build_request(args)
    except (ValueError, ComposeParseError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_USAGE

    if not request.images:
        print("Error: no images given (use --image or --compose)", file=sys.stderr)
        return EXIT_USAGE

    pipeline = build_pipeline(args, DatabaseAuditLog(db))
    try:
        run = asyncio.run(pipeline.run(request, dry_run=args.dry_run))
    except PipelineBusy as e:
        print(e.reason, file=sys.stderr)
        return EXIT_BUSY

    print_run(run)
    return EXIT_COMPLETED if run.succeeded else EXIT_FAILED


def cmd_audit(args: argparse.Namespace, db: DatabaseManager) -> int:
    count = 0
    for entry in DatabaseAuditLog(db).entries(run_id=args.run_id):
        count += 1
        if entry.action == 'transition':
            detail = f"{entry.from_state} -> {entry.to_state}"
        else:
            detail = f"{entry.action} {entry.subject or ''}".rstrip()
        suffix = f" [{entry.reason}]" if entry.reason else ""
        print(f"{entry.timestamp.isoformat()} {entry.run_id} {detail}{suffix}")

    if count == 0:
        print("No audit records found.")
    return EXIT_COMPLETED


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        AppConfig.validate()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_USAGE

    setup_logging(args.log_level)

    db = DatabaseManager(AppConfig.DATABASE_PATH)
    try:
        if args.command == "run":
            return cmd_run(args, db)
        return cmd_audit(args, db)
    except KeyboardInterrupt:
        print("\nOperation cancelled.", file=sys.stderr)
        return EXIT_FAILED
    finally:
        db.dispose()


if __name__ == "__main__":
    sys.exit(main())
