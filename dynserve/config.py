# dynserve configuration
"""
Strongly typed configuration for the instance controller and its listeners.
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path


PACKAGE_DIR = Path(__file__).resolve().parent

# Logging configuration
LOG_FORMAT: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# Default directories served when an instance gives no override
DEFAULT_VIEWS_PATH: str = str(PACKAGE_DIR / "views")
DEFAULT_ASSETS_PATH: str = str(PACKAGE_DIR / "public")


class DefaultPort(int, Enum):
    """Default starting ports"""
    START = 3000


class AllocationLimit(int, Enum):
    """Port allocation limits"""
    MAX_ATTEMPTS = 10
    BIND_RETRIES = 2
    MAX_PORT = 65535


class BodyLimit(int, Enum):
    """Request body limits in bytes"""
    JSON = 100 * 1024 * 1024  # 100MB


@dataclass
class DynServeConfig:
    """
    Controller and listener configuration.

    Attributes:
        host: Interface every instance listens on (and ports are probed on)
        max_attempts: Consecutive ports probed per allocation
        bind_retries: Extra allocation rounds when the final bind loses a race
        log_level: uvicorn log level for managed listeners
        default_views_path: Template root used when an instance has none
        default_assets_path: Static root used when an instance has none
        json_body_limit: Largest accepted request body in bytes
        url_host: Host name used in URLs handed back to callers
    """
    host: str = "0.0.0.0"
    max_attempts: int = AllocationLimit.MAX_ATTEMPTS.value
    bind_retries: int = AllocationLimit.BIND_RETRIES.value
    log_level: str = "warning"
    default_views_path: str = DEFAULT_VIEWS_PATH
    default_assets_path: str = DEFAULT_ASSETS_PATH
    json_body_limit: int = BodyLimit.JSON.value
    url_host: str = "localhost"

    def url_for_port(self, port: int) -> str:
        """Build the public URL of a listener bound on port"""
        return f"http://{self.url_host}:{port}/"


# Global default configuration instance
DEFAULT_CONFIG = DynServeConfig()
