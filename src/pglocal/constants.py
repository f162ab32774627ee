"""Constants used in the project."""

import os
from enum import Enum
from pathlib import Path


class ExitCodes(Enum):
    """Exit codes for the program.

    Args:
        Enum (int): Exit codes for the program.
    """

    SUCCESS = 0
    FILE_ERROR = 1
    CONNECTION_ERROR = 2
    RUNTIME_ERROR = 3
    INTERRUPTED = 130


class ArchiveFormat(Enum):
    """Packaging conventions a repository may publish archives in."""

    TAR_GZ = "tar.gz"
    TAR_XZ = "tar.xz"
    ZIP = "zip"
    # zip container (e.g. a Maven jar) holding a single tar.xz
    ZIP_TXZ = "zip+txz"


class HashAlgorithm(Enum):
    """Checksum algorithms, valued by their hashlib name."""

    MD5 = "md5"
    SHA1 = "sha1"
    SHA256 = "sha256"
    SHA512 = "sha512"


class Constants:  # pylint: disable=too-few-public-methods
    """General constants used in the project.
    Data holder for configuration constants; not intended to provide behavior.
    """

    THESEUS_URL = "https://github.com/theseus-rs/postgresql-binaries"
    ZONKY_URL = "https://github.com/zonkyio/embedded-postgres-binaries"
    MAVEN_CENTRAL_URL = "https://repo1.maven.org/maven2"
    ZONKY_GROUP_PATH = "io/zonky/test/postgres"
    ZONKY_ARTIFACT_PREFIX = "embedded-postgres-binaries"
    GITHUB_API_URL = "https://api.github.com"
    GITHUB_API_VERSION = "2022-11-28"
    GITHUB_PER_PAGE = 100
    ENV_GITHUB_TOKEN = "GITHUB_TOKEN"
    USER_AGENT = "pglocal"

    REQUEST_TIMEOUT = 30  # seconds
    HTTP_RETRY_MAX = 3
    HTTP_RETRY_BASE_DELAY_SEC = 0.5
    HTTP_RETRY_MAX_DELAY_SEC = 8.0
    HTTP_RETRY_JITTER_SEC = 0.25
    DOWNLOAD_CHUNK_SIZE = 64 * 1024
    HASH_MISMATCH_RETRIES = 1

    ENV_CACHE_DIR = "PGLOCAL_CACHE_DIR"
    DEFAULT_CACHE_DIR = str(Path.home() / ".cache" / "pglocal")
    LOCK_FILE = ".lock"
    COMPLETION_MARKER = ".complete"
    INSTALL_SUBDIR = "install"
    LOCK_TIMEOUT_SEC = 300.0
    LOCK_POLL_INTERVAL_SEC = 0.1

    DEFAULT_HOST = "localhost"
    DEFAULT_PORT = 0
    DEFAULT_USERNAME = "postgres"
    DEFAULT_DATABASE = "postgres"
    DEFAULT_VERSION = "*"
    PASSWORD_LENGTH = 16
    STARTUP_TIMEOUT_SEC = 30.0
    STOP_TIMEOUT_SEC = 10.0
    COMMAND_TIMEOUT_SEC = 120.0
    READY_POLL_BASE_DELAY_SEC = 0.05
    READY_POLL_MAX_DELAY_SEC = 1.0
    CONNECT_TIMEOUT_SEC = 2
    SERVER_LOG_FILE = "postgresql.log"
    PG_CONF_FILE = "postgresql.conf"
    LOG_TAIL_LINES = 20

    ENV_LOG_LEVEL = "PGLOCAL_LOG_LEVEL"
    ENV_INTEGRATION = "PGLOCAL_INTEGRATION"
    LOG_FORMAT = "[%(levelname)s] %(message)s"
    LOG_FILE_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def default_cache_dir() -> Path:
    """Return the install cache root, honoring PGLOCAL_CACHE_DIR."""
    return Path(os.environ.get(Constants.ENV_CACHE_DIR) or Constants.DEFAULT_CACHE_DIR)
