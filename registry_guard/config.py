"""
Runtime configuration.

All values come from environment variables with development defaults.
Engine classes take these as constructor defaults so tests can inject their own.
"""
import os


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# Name of the account service as shown in confirmation command text
SERVICE_NAME = os.getenv("REGISTRY_SERVICE_NAME", "NickServ")

# Secret mixed into stateless drop challenges. Rotate to invalidate every outstanding challenge.
DROP_CHALLENGE_SECRET = os.getenv("DROP_CHALLENGE_SECRET", "dev-only-drop-challenge-secret")

# A drop challenge stays valid for the window it was issued in plus the next one
DROP_CHALLENGE_WINDOW_SECONDS = int(os.getenv("DROP_CHALLENGE_WINDOW_SECONDS", "3600"))

# Wrong drop keys tolerated per actor within one window (0 disables the cap)
DROP_CHALLENGE_MAX_FAILURES = int(os.getenv("DROP_CHALLENGE_MAX_FAILURES", "5"))

# Accounts allowed to share one e-mail address (0 means unlimited)
MAX_ACCOUNTS_PER_EMAIL = int(os.getenv("MAX_ACCOUNTS_PER_EMAIL", "5"))

# Pending verification records older than this cannot be redeemed (0 disables expiry)
PENDING_TTL_SECONDS = int(os.getenv("PENDING_TTL_SECONDS", "0"))

# When false, accounts own no nicknames: alias checks and name holds are skipped
NICK_OWNERSHIP = _env_bool("NICK_OWNERSHIP", True)

GENERATED_PASSWORD_LENGTH = int(os.getenv("GENERATED_PASSWORD_LENGTH", "12"))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "json")  # json|text

# Shared secret the session layer presents as a Bearer token. Empty refuses every API call.
API_TOKEN = os.getenv("REGISTRY_API_TOKEN", "")

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./registry.db")
