"""
Hardcoded-secret scanner for build contexts.

The pipeline treats the scanner as an external collaborator: anything with a
``scan(targets) -> ScanResult`` method can be plugged in (gitleaks wrapper,
vendor API, ...). RegexSecretScanner is the built-in default: it walks each
build context and applies a fixed list of regex rules line by line.

Matches record path, line number and rule name only. The matched text is a
(suspected) secret and is never kept.
"""

import logging
import os
import re
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple

from errors import ScanUnavailable
from .types import ScanMatch, ScanResult

logger = logging.getLogger(__name__)

# (rule name, compiled pattern)
DEFAULT_RULES: List[Tuple[str, re.Pattern]] = [
    ('private-key', re.compile(r'-----BEGIN (?:RSA |EC |DSA |OPENSSH |PGP )?PRIVATE KEY( BLOCK)?-----')),
    ('aws-access-key-id', re.compile(r'\b(?:AKIA|ASIA)[0-9A-Z]{16}\b')),
    ('github-token', re.compile(r'\bgh[pousr]_[A-Za-z0-9]{36,}\b')),
    ('slack-token', re.compile(r'\bxox[abprs]-[A-Za-z0-9-]{10,}\b')),
    ('generic-credential-assignment', re.compile(
        r'(?i)\b[A-Za-z0-9_]*(?:password|passwd|secret|api[_-]?key|access[_-]?token|auth[_-]?token)[A-Za-z0-9_]*'
        r'\s*[:=]\s*["\'][^"\'\s$<{]{8,}["\']'
    )),
]

# Directories that never end up in an image or only hold vendored code
SKIPPED_DIRECTORIES = {'.git', 'node_modules', '.venv', 'venv', '__pycache__', '.next', 'dist', 'build'}

# Files above this size are skipped (bundles, datasets, lockfiles from hell)
MAX_FILE_SIZE = 1024 * 1024  # 1MB


class RegexSecretScanner:
    """
    Line-based regex scanner.

    Usage:
        scanner = RegexSecretScanner()
        result = scanner.scan(["./backend", "./frontend"])
        if not result.clean:
            for match in result.matches:
                print(f"{match.path}:{match.line} {match.rule}")
    """

    def __init__(
        self,
        rules: Optional[Sequence[Tuple[str, re.Pattern]]] = None,
        skipped_directories: Optional[Iterable[str]] = None,
        max_file_size: int = MAX_FILE_SIZE,
    ):
        self.rules = list(rules) if rules is not None else list(DEFAULT_RULES)
        self.skipped_directories = set(skipped_directories) if skipped_directories is not None else set(SKIPPED_DIRECTORIES)
        self.max_file_size = max_file_size

    def scan(self, targets: Sequence[str]) -> ScanResult:
        """
        Scan every file under the given directories (or the files themselves).

        Args:
            targets: Build context directories or individual files

        Returns:
            ScanResult with one ScanMatch per (file, line, rule) hit

        Raises:
            ScanUnavailable: If a target doesn't exist
        """
        matches: List[ScanMatch] = []
        files_scanned = 0

        for target in targets:
            if not os.path.exists(target):
                raise ScanUnavailable(f"Scan target does not exist: {target}")

            for path in self._iter_files(target):
                files_scanned += 1
                matches.extend(self._scan_file(path))

        logger.info(f"Secret scan checked {files_scanned} file(s), {len(matches)} match(es)")
        return ScanResult.from_matches(matches)

    def _iter_files(self, target: str) -> Iterator[str]:
        if os.path.isfile(target):
            yield target
            return

        for root, dirs, files in os.walk(target):
            # Prune in place so os.walk doesn't descend
            dirs[:] = sorted(d for d in dirs if d not in self.skipped_directories)
            for name in sorted(files):
                yield os.path.join(root, name)

    def _scan_file(self, path: str) -> List[ScanMatch]:
        try:
            if os.path.getsize(path) > self.max_file_size:
                logger.debug(f"Skipping large file {path}")
                return []
            with open(path, 'rb') as f:
                content = f.read()
        except OSError as e:
            logger.warning(f"Could not read {path} during secret scan: {e.strerror}")
            return []

        # NUL bytes: binary file
        if b'\x00' in content[:8192]:
            return []

        text = content.decode('utf-8', errors='replace')
        found = []
        for line_number, line in enumerate(text.splitlines(), start=1):
            for rule_name, pattern in self.rules:
                if pattern.search(line):
                    found.append(ScanMatch(path=path, line=line_number, rule=rule_name))
        return found

