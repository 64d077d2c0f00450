# --------------------------------------------------
# config.py
# --------------------------------------------------
# This file loads all environment-based configuration for the service.
# It follows the 12-factor app pattern:
#   - DATABASE_URL (SQLite file location)
#   - GATEWAY_MODE (proxy | private)
#   - ASG_* (upstream SMS gateway server, proxy mode)
#   - PRIVATE_TOKEN / PUBLIC_URL (device registration, private mode)
#   - WEBHOOK_SIGNING_KEY (HMAC signature on subscriber fan-out)
#   - PUSH_* (upstream push relay policy)
#   - LOG_LEVEL (INFO, DEBUG, etc.)
#
# Defaults are only fallback values for local development.
# --------------------------------------------------

import os


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "")
    return float(raw) if raw else default


class SimpleSettings:
    """
    Minimal settings loader for environment configuration.
    Values are read once, when the instance is built, and used across
    the application. Tests build their own instance after patching env.
    """

    def __init__(self):
        # Expected format: sqlite:////absolute/path/to/file.db
        self.DATABASE_URL = os.environ.get(
            "DATABASE_URL", "sqlite:///~/.sms-inbox/messages.db"
        )

        # Logging verbosity, INFO unless overridden.
        self.LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

        # "proxy" forwards sends to an always-on gateway server,
        # "private" queues them for a registered Android device.
        self.GATEWAY_MODE = os.environ.get("GATEWAY_MODE", "proxy").lower()

        # Proxy mode
        self.ASG_ENDPOINT = os.environ.get("ASG_ENDPOINT", "")
        self.ASG_USERNAME = os.environ.get("ASG_USERNAME", "")
        self.ASG_PASSWORD = os.environ.get("ASG_PASSWORD", "")

        # Private mode
        self.PRIVATE_TOKEN = os.environ.get("PRIVATE_TOKEN", "")
        self.PUBLIC_URL = os.environ.get("PUBLIC_URL", "")
        self.WEBHOOK_SIGNING_KEY = os.environ.get("WEBHOOK_SIGNING_KEY", "")

        # Single tenant: every device and queued message belongs to this user.
        self.PRIMARY_USER_ID = os.environ.get("PRIMARY_USER_ID", "primary")

        # Upstream push relay
        self.PUSH_URL = os.environ.get(
            "PUSH_URL", "https://api.sms-gate.app/upstream/v1/push"
        )
        self.PUSH_POLICY = os.environ.get("PUSH_POLICY", "debounced").lower()
        self.PUSH_DEBOUNCE_SECONDS = _env_float("PUSH_DEBOUNCE_SECONDS", 5.0)

        # Live channel keep-alive
        self.SSE_HEARTBEAT_SECONDS = _env_float("SSE_HEARTBEAT_SECONDS", 30.0)

        # Applied to every outbound HTTP call (proxy, push, webhook fan-out).
        self.HTTP_TIMEOUT_SECONDS = _env_float("HTTP_TIMEOUT_SECONDS", 10.0)

    @property
    def db_path(self) -> str:
        """Filesystem path derived from DATABASE_URL."""
        url = self.DATABASE_URL
        path = url[len("sqlite:///"):] if url.startswith("sqlite:///") else url
        return os.path.expanduser(path)


# Global settings instance used throughout the application.
settings = SimpleSettings()
