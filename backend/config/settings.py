"""
Configuration Management for Shipgate
Centralizes all environment-based configuration and settings
"""

import os
import re
import logging
from logging.handlers import RotatingFileHandler


class SecretRedactionFilter(logging.Filter):
    """Mask credential-looking fragments before a record reaches any handler"""

    # key=value / key: value pairs whose value must never reach a log file
    _PATTERN = re.compile(
        r'(?i)\b(password|passwd|secret|token|api[_-]?key|auth)(["\']?\s*[:=]\s*["\']?)([^\s"\',;]+)'
    )

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = self._PATTERN.sub(r'\1\2***', message)
        if redacted != message:
            # Freeze the redacted text so handlers don't re-interpolate args
            record.msg = redacted
            record.args = None
        return True


def setup_logging(level: str = None):
    """Configure application logging with rotation"""
    from .paths import LOG_DIR

    level_name = (level or AppConfig.LOG_LEVEL).upper()
    log_level = getattr(logging, level_name, logging.INFO)

    # Create logs directory with secure permissions
    os.makedirs(LOG_DIR, mode=0o700, exist_ok=True)

    # Set up root logger
    root_logger = logging.getLogger()

    # Close and clear any existing handlers to prevent file descriptor leaks
    for handler in root_logger.handlers[:]:  # Copy list to avoid modification during iteration
        handler.close()
        root_logger.removeHandler(handler)

    root_logger.setLevel(log_level)

    redaction = SecretRedactionFilter()

    # Console handler (stderr, so stdout stays clean for CLI output)
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    console_handler.setFormatter(console_formatter)
    console_handler.addFilter(redaction)

    # File handler with rotation for pipeline logs
    # Max 10MB per file, keep 14 backups
    file_handler = RotatingFileHandler(
        os.path.join(LOG_DIR, 'shipgate.log'),
        maxBytes=10*1024*1024,  # 10MB
        backupCount=14,  # Keep 14 old files
        encoding='utf-8'
    )
    file_handler.setLevel(log_level)
    file_handler.setFormatter(console_formatter)
    file_handler.addFilter(redaction)

    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)

    # The Docker SDK logs every HTTP call to the engine at DEBUG
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("docker").setLevel(logging.WARNING)


class AppConfig:
    """Main application configuration"""

    # Policy
    DEPLOY_BRANCH = os.getenv('SHIPGATE_DEPLOY_BRANCH', 'main')
    FORBID_LATEST_TAG = os.getenv('SHIPGATE_FORBID_LATEST_TAG', 'false').lower() in ('1', 'true', 'yes')

    # Secret source: env, file or vendor
    SECRET_SOURCE = os.getenv('SHIPGATE_SECRET_SOURCE', 'env')
    SECRET_ENV_PREFIX = os.getenv('SHIPGATE_SECRET_ENV_PREFIX', '')
    SECRET_KEY = os.getenv('SHIPGATE_SECRET_KEY')  # Fernet key for encrypted secret files
    VENDOR_URL = os.getenv('SHIPGATE_VENDOR_URL')
    VENDOR_TOKEN = os.getenv('SHIPGATE_VENDOR_TOKEN')

    # Import centralized paths
    from .paths import SECRETS_DIR, DATABASE_PATH

    # Names of the secrets holding registry credentials
    REGISTRY_USER_SECRET = os.getenv('SHIPGATE_REGISTRY_USER_SECRET', 'REGISTRY_USERNAME')
    REGISTRY_PASSWORD_SECRET = os.getenv('SHIPGATE_REGISTRY_PASSWORD_SECRET', 'REGISTRY_PASSWORD')

    # Execution limits
    OPERATION_TIMEOUT = float(os.getenv('SHIPGATE_OPERATION_TIMEOUT', 15 * 60))
    MAX_RETRIES = int(os.getenv('SHIPGATE_MAX_RETRIES', 2))
    RETRY_BASE_DELAY = float(os.getenv('SHIPGATE_RETRY_BASE_DELAY', 2.0))
    BUILD_CONCURRENCY = int(os.getenv('SHIPGATE_BUILD_CONCURRENCY', 4))
    PUSH_CONCURRENCY = int(os.getenv('SHIPGATE_PUSH_CONCURRENCY', 1))

    # Logging
    LOG_LEVEL = os.getenv('SHIPGATE_LOG_LEVEL', 'INFO')

    VALID_SECRET_SOURCES = ('env', 'file', 'vendor')

    @classmethod
    def validate(cls):
        """Validate configuration"""
        if cls.SECRET_SOURCE not in cls.VALID_SECRET_SOURCES:
            raise ValueError(
                f"Invalid secret source: {cls.SECRET_SOURCE}. "
                f"Must be one of {', '.join(cls.VALID_SECRET_SOURCES)}"
            )

        if cls.SECRET_SOURCE == 'vendor' and not cls.VENDOR_URL:
            raise ValueError("SHIPGATE_VENDOR_URL is required when SHIPGATE_SECRET_SOURCE=vendor")

        if not cls.DEPLOY_BRANCH:
            raise ValueError("Deploy branch cannot be empty")

        if cls.OPERATION_TIMEOUT <= 0:
            raise ValueError(f"Operation timeout must be positive: {cls.OPERATION_TIMEOUT}")

        if cls.MAX_RETRIES < 0:
            raise ValueError(f"Max retries cannot be negative: {cls.MAX_RETRIES}")

        if cls.BUILD_CONCURRENCY < 1 or cls.PUSH_CONCURRENCY < 1:
            raise ValueError("Build and push concurrency must be at least 1")

        return True
