"""
Image Reference Utilities

Image references on the command line and in compose files come in several
shapes:
- "nginx" (Docker Hub, no tag)
- "nginx:1.25" (Docker Hub, tagged)
- "ghcr.io/org/app:latest" (explicit registry)
- "registry.example.com:5000/app:v1" (registry with port, tagged)

The colon of a registry port must not be mistaken for a tag separator.
"""

import re
from typing import Optional, Tuple

# Docker's own rule for tags: 128 chars, word chars, dots and dashes,
# may not start with a dot or dash
TAG_PATTERN = re.compile(r'^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$')

# Lowercase path components separated by slashes, optional registry host prefix
REPOSITORY_PATTERN = re.compile(
    r'^(?:[A-Za-z0-9.-]+(?::[0-9]+)?/)?[a-z0-9]+(?:[._-][a-z0-9]+)*(?:/[a-z0-9]+(?:[._-][a-z0-9]+)*)*$'
)


def split_image_reference(reference: str) -> Tuple[str, Optional[str]]:
    """
    Split "repository[:tag]" into its parts.

    Args:
        reference: Image reference, optionally prefixed with a registry host

    Returns:
        (repository, tag) where tag is None when the reference has no tag

    Examples:
        >>> split_image_reference("nginx:1.25")
        ("nginx", "1.25")
        >>> split_image_reference("registry.example.com:5000/app")
        ("registry.example.com:5000/app", None)
    """
    reference = reference.strip()
    # Digest references are not tags; keep them on the repository side
    if '@' in reference:
        return reference, None

    last_slash = reference.rfind('/')
    last_colon = reference.rfind(':')
    if last_colon > last_slash:
        return reference[:last_colon], reference[last_colon + 1:] or None
    return reference, None


def is_valid_tag(tag: Optional[str]) -> bool:
    """Check a tag against Docker's tag grammar."""
    return bool(tag) and TAG_PATTERN.match(tag) is not None


def is_valid_repository(repository: Optional[str]) -> bool:
    """Check a repository name (with optional registry host) against Docker's grammar."""
    return bool(repository) and REPOSITORY_PATTERN.match(repository) is not None


def registry_for(repository: str) -> str:
    """
    Extract the registry host from a repository name.

    Examples:
        nginx → docker.io
        ghcr.io/user/app → ghcr.io
        registry.example.com:5000/app → registry.example.com:5000
    """
    registry_url = "docker.io"  # Default for Docker Hub

    if "/" in repository:
        first = repository.split("/", 1)[0]
        # If first part has dot or colon (or is localhost), it's a registry
        if "." in first or ":" in first or first == "localhost":
            registry_url = first

    return registry_url.lower()
