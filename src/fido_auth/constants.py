"""Application-wide constants for fido-auth.

Constants that define application behavior.
For user-configurable settings per deployment, see config.py.
"""

__all__ = [
    # Application identity
    "APP_NAME",
    # Session lifetime
    "DEFAULT_SESSION_TTL_DAYS",
    "SESSION_TOKEN_HEADER",
    "MAX_TOKEN_ATTEMPTS",
    # Validation cache
    "DEFAULT_VALIDATION_CACHE_TTL_SECONDS",
    "DEFAULT_VALIDATION_CACHE_MAX_ENTRIES",
    # Cleanup
    "DEFAULT_CLEANUP_INTERVAL_SECONDS",
    "DEFAULT_DEVICE_FLOW_RETENTION_SECONDS",
    # Device flow
    "DEVICE_FLOW_POLL_INTERVAL_SECONDS",
    "DEVICE_FLOW_SLOW_DOWN_INCREMENT_SECONDS",
    "DEVICE_FLOW_TIMEOUT_SECONDS",
    "OAUTH_CLIENT_TIMEOUT_SECONDS",
    "GITHUB_DEVICE_CODE_URL",
    "GITHUB_TOKEN_URL",
    "GITHUB_USER_URL",
    "DEVICE_CODE_GRANT_TYPE",
    # Rate limiting
    "DEFAULT_RATE_LIMIT_REQUESTS",
    "DEFAULT_RATE_LIMIT_WINDOW_SECONDS",
    # Client
    "CLIENT_SESSION_DIR_NAME",
    "CLIENT_SESSION_FILE_NAME",
    "MIN_CLIENT_TOKEN_LENGTH",
    "MAX_CLIENT_TOKEN_LENGTH",
    "STALE_TEMP_FILE_SECONDS",
    "DEFAULT_SERVER_URL",
    "DEFAULT_HTTP_TIMEOUT_SECONDS",
    "TRANSPORT_RETRY_MAX_ATTEMPTS",
    "TRANSPORT_RETRY_INITIAL_DELAY",
    "TRANSPORT_RETRY_BACKOFF_MULTIPLIER",
    # Server
    "DEFAULT_HOST",
    "DEFAULT_PORT",
    "DEFAULT_DATABASE_PATH",
]

# ============================================================================
# Application Identity
# ============================================================================

# Application name used for directory names, logger names, etc.
APP_NAME: str = "fido"

# ============================================================================
# Sessions
# ============================================================================

# Sessions live for 30 days from creation
DEFAULT_SESSION_TTL_DAYS: int = 30

# Header carrying the opaque session token on every authenticated request
SESSION_TOKEN_HEADER: str = "X-Session-Token"

# Token generation attempts before giving up on a uniqueness collision
MAX_TOKEN_ATTEMPTS: int = 5

# Short-lived in-process validation cache (must stay below the session TTL)
DEFAULT_VALIDATION_CACHE_TTL_SECONDS: int = 60
DEFAULT_VALIDATION_CACHE_MAX_ENTRIES: int = 10_000

# ============================================================================
# Cleanup
# ============================================================================

# Expired session sweep runs on startup and then hourly
DEFAULT_CLEANUP_INTERVAL_SECONDS: int = 3600

# Terminal device-flow records are kept this long so repeated polls
# still get the same answer
DEFAULT_DEVICE_FLOW_RETENTION_SECONDS: int = 300

# ============================================================================
# OAuth Device Flow
# ============================================================================

# Used when the provider omits "interval" from its device code response
DEVICE_FLOW_POLL_INTERVAL_SECONDS: int = 5

# RFC 8628: on slow_down the client adds 5 seconds to its interval
DEVICE_FLOW_SLOW_DOWN_INCREMENT_SECONDS: int = 5

# Overall client-side wait for the user to approve (15 minutes)
DEVICE_FLOW_TIMEOUT_SECONDS: int = 900

# HTTP timeout for identity provider calls
OAUTH_CLIENT_TIMEOUT_SECONDS: float = 30.0

GITHUB_DEVICE_CODE_URL: str = "https://github.com/login/device/code"
GITHUB_TOKEN_URL: str = "https://github.com/login/oauth/access_token"
GITHUB_USER_URL: str = "https://api.github.com/user"

DEVICE_CODE_GRANT_TYPE: str = "urn:ietf:params:oauth:grant-type:device_code"

# ============================================================================
# Rate Limiting
# ============================================================================

# 100 requests per minute per session token
DEFAULT_RATE_LIMIT_REQUESTS: int = 100
DEFAULT_RATE_LIMIT_WINDOW_SECONDS: int = 60

# ============================================================================
# Client
# ============================================================================

# Session file lives at ~/.fido/session
CLIENT_SESSION_DIR_NAME: str = ".fido"
CLIENT_SESSION_FILE_NAME: str = "session"

# Shape check for a persisted token (UUIDs are 36 chars)
MIN_CLIENT_TOKEN_LENGTH: int = 8
MAX_CLIENT_TOKEN_LENGTH: int = 256

# Leftover temp files from interrupted writes older than this are removed
STALE_TEMP_FILE_SECONDS: float = 60.0

DEFAULT_SERVER_URL: str = "http://127.0.0.1:3000"

DEFAULT_HTTP_TIMEOUT_SECONDS: float = 30.0

# Transport-level retry for client requests
# 3 attempts: immediate → wait 1s → retry → wait 2s → retry → fail
TRANSPORT_RETRY_MAX_ATTEMPTS: int = 3
TRANSPORT_RETRY_INITIAL_DELAY: float = 1.0
TRANSPORT_RETRY_BACKOFF_MULTIPLIER: float = 2.0

# ============================================================================
# Server
# ============================================================================

DEFAULT_HOST: str = "0.0.0.0"
DEFAULT_PORT: int = 3000
DEFAULT_DATABASE_PATH: str = "fido.db"
