"""
Docker Compose manifest loader.

Turns the services of a docker-compose.yml that have a ``build`` section into
ImageRefs for a deployment request:
- repository/tag from ``image`` (service name when absent)
- runtime user from ``user``
- build context from ``build`` or ``build.context``, relative to the compose file

Services without ``build`` use upstream images and are not deployed by us.
Supports ${VAR} and ${VAR:-default} substitution.
"""

import os
import re
from typing import Dict, List, Optional

import yaml

from .types import ImageRef


class ComposeParseError(Exception):
    """Compose manifest can't be turned into deployable images"""


# ${NAME} or ${NAME:-fallback}
_VARIABLE_RE = re.compile(r'\$\{(?P<name>[A-Za-z_][A-Za-z0-9_]*)(?::-(?P<fallback>[^}]*))?\}')


def expand_variables(text: str, variables: Dict[str, str]) -> str:
    """
    Expand ${NAME} and ${NAME:-fallback} references in compose text.

    Raises:
        ComposeParseError: Listing every referenced variable that has no value
    """
    missing = []

    def lookup(match):
        name = match.group('name')
        if name in variables:
            return variables[name]
        if match.group('fallback') is not None:
            return match.group('fallback')
        missing.append(name)
        return ''

    expanded = _VARIABLE_RE.sub(lookup, text)
    if missing:
        raise ComposeParseError(f"Missing required variable(s): {', '.join(dict.fromkeys(missing))}")
    return expanded


class ComposeLoader:
    """Reads the buildable services out of a compose manifest"""

    def parse(self, content: str, variables: Optional[Dict[str, str]] = None) -> dict:
        """
        Expand variables in compose text and load it.

        Returns:
            The manifest as a dict with a non-empty ``services`` mapping

        Raises:
            ComposeParseError: On missing variables, bad YAML or no services
        """
        try:
            data = yaml.safe_load(expand_variables(content, variables or {}))
        except yaml.YAMLError as e:
            raise ComposeParseError(f"Invalid YAML syntax: {e}")

        if not isinstance(data, dict):
            raise ComposeParseError("Compose file must be a YAML mapping")
        if not isinstance(data.get('services'), dict) or not data['services']:
            raise ComposeParseError("No services defined")
        return data

    def load_images(self, compose_path: str, variables: Optional[Dict[str, str]] = None) -> List[ImageRef]:
        """
        Read a compose file and return the images it builds.

        Args:
            compose_path: Path to docker-compose.yml
            variables: Substitution variables (defaults to the process environment)

        Returns:
            ImageRefs in service declaration order

        Raises:
            ComposeParseError: If the file can't be read or parsed
        """
        try:
            with open(compose_path, 'r', encoding='utf-8') as f:
                content = f.read()
        except OSError as e:
            raise ComposeParseError(f"Cannot read compose file {compose_path}: {e.strerror}")

        data = self.parse(content, dict(os.environ) if variables is None else variables)
        base_dir = os.path.dirname(os.path.abspath(compose_path))
        return self.images_from_data(data, base_dir)

    def images_from_data(self, data: dict, base_dir: str = '.') -> List[ImageRef]:
        """Extract buildable services from parsed compose data."""
        images = []
        for service_name, service in data['services'].items():
            service = service or {}
            build = service.get('build')
            if not build:
                continue

            if isinstance(build, str):
                context = build
            elif isinstance(build, dict):
                context = build.get('context', '.')
            else:
                raise ComposeParseError(f"Service '{service_name}' has an invalid build section")

            user = service.get('user', '')
            images.append(ImageRef.parse(
                service.get('image') or service_name,
                runtime_user=str(user) if user is not None else '',
                build_context=os.path.normpath(os.path.join(base_dir, context)),
            ))
        return images

