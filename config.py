import os
from typing import Dict, List, Optional

# Upstream TiDB Cloud OAuth endpoints per environment
TIDB_OAUTH_ENDPOINTS: Dict[str, Dict[str, str]] = {
    "development": {
        "authorize": "https://dev.tidbcloud.com/oauth/authorize",
        "token": "https://oauth.dev.tidbcloud.com/v1/token",
        "device_authorization": "https://oauth.dev.tidbcloud.com/v1/device_authorization",
    },
    "production": {
        "authorize": "https://tidbcloud.com/oauth/authorize",
        "token": "https://oauth.tidbcloud.com/v1/token",
        "device_authorization": "https://oauth.tidbcloud.com/v1/device_authorization",
    },
}

SENSITIVE_FIELDS = ["secret", "password", "private_key", "redis_url"]


class Config:
    """Configuration management for the OAuth gateway"""

    def __init__(self):
        # Server configuration
        self.host = os.getenv("HOST", "0.0.0.0")
        self.port = int(os.getenv("PORT", 8000))
        self.environment = os.getenv("ENVIRONMENT", "production")
        self.server_host = os.getenv("SERVER_HOST", f"localhost:{self.port}")

        # Security configuration
        self.allowed_origins = self._parse_allowed_origins()

        # Rate limiting configuration
        self.rate_limit_enabled = os.getenv("RATE_LIMIT_ENABLED", "true").lower() == "true"
        self.rate_limit_requests = int(os.getenv("RATE_LIMIT_REQUESTS", 100))
        self.rate_limit_window = int(os.getenv("RATE_LIMIT_WINDOW", 60))
        self.rate_limit_strict_requests = int(os.getenv("RATE_LIMIT_STRICT_REQUESTS", 20))

        # OAuth flow configuration
        self.oauth_state_ttl = int(os.getenv("OAUTH_STATE_TTL", 600))  # 10 minutes
        self.oauth_code_ttl = int(os.getenv("OAUTH_CODE_TTL", 600))  # 10 minutes
        self.oauth_refresh_token_ttl = int(os.getenv("OAUTH_REFRESH_TOKEN_TTL", 30 * 24 * 3600))  # 30 days
        self.oauth_refresh_token_rotation = os.getenv("OAUTH_REFRESH_TOKEN_ROTATION", "false").lower() == "true"
        self.oauth_callback_path = os.getenv("OAUTH_CALLBACK_PATH", "/oauth/callback")
        self.oauth_scope = os.getenv("OAUTH_SCOPE", "org:owner")

        # Upstream TiDB Cloud OAuth client (confidential credentials)
        self.oauth_client_id = os.getenv("TIDB_CLOUD_OAUTH_CLIENT_ID")
        self.oauth_client_secret = os.getenv("TIDB_CLOUD_OAUTH_CLIENT_SECRET")
        endpoints = TIDB_OAUTH_ENDPOINTS["development" if self.is_development else "production"]
        self.upstream_authorize_url = os.getenv("TIDB_CLOUD_OAUTH_AUTHORIZE_URL", endpoints["authorize"])
        self.upstream_token_url = os.getenv("TIDB_CLOUD_OAUTH_TOKEN_URL", endpoints["token"])
        self.upstream_device_authorization_url = os.getenv(
            "TIDB_CLOUD_OAUTH_DEVICE_AUTHORIZATION_URL", endpoints["device_authorization"]
        )
        self.upstream_timeout = float(os.getenv("UPSTREAM_TIMEOUT", 30))

        # Storage configuration
        self.redis_url = os.getenv("REDIS_URL")  # Required for multi-instance deployments

        # Service metadata
        self.service_name = os.getenv("SERVICE_NAME", "tidbcloud-remote-mcp")
        self.service_version = os.getenv("SERVICE_VERSION", "0.1.0")
        self.service_documentation = os.getenv(
            "SERVICE_DOCUMENTATION", "https://github.com/likidu/mcp-server-tidbcloud"
        )

        # Logging configuration
        self.log_level = os.getenv("LOG_LEVEL", "INFO")
        self.log_format = os.getenv("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s")

        self._validate_config()

    def _parse_allowed_origins(self) -> List[str]:
        """Parse allowed origins from environment variable"""
        origins_str = os.getenv("ALLOWED_ORIGINS", "*")
        if origins_str == "*":
            return ["*"]
        return [origin.strip() for origin in origins_str.split(",")]

    def _validate_config(self):
        """Validate configuration values"""
        if self.environment not in TIDB_OAUTH_ENDPOINTS:
            raise ValueError("ENVIRONMENT must be 'production' or 'development'")

        if self.oauth_state_ttl < 30 or self.oauth_state_ttl > 600:
            raise ValueError("OAUTH_STATE_TTL must be between 30 and 600 seconds")

        if self.oauth_code_ttl < 30 or self.oauth_code_ttl > 600:
            raise ValueError("OAUTH_CODE_TTL must be between 30 and 600 seconds")

        if not self.oauth_callback_path.startswith("/"):
            raise ValueError("OAUTH_CALLBACK_PATH must start with '/'")

        if self.upstream_timeout <= 0:
            raise ValueError("UPSTREAM_TIMEOUT must be positive")

        if self.rate_limit_requests < 1 or self.rate_limit_window < 1:
            raise ValueError("RATE_LIMIT_REQUESTS and RATE_LIMIT_WINDOW must be positive")

    @property
    def is_development(self) -> bool:
        """Check if running in development mode"""
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode"""
        return self.environment == "production"

    @property
    def oauth_configured(self) -> bool:
        """Both halves of the upstream confidential client are present"""
        return bool(self.oauth_client_id and self.oauth_client_secret)

    def safe_dict(self) -> Dict[str, Optional[str]]:
        """Configuration snapshot with secrets redacted, for startup logging"""
        result = {}
        for key, value in vars(self).items():
            if any(field in key.lower() for field in SENSITIVE_FIELDS):
                result[key] = "[REDACTED]" if value else None
            else:
                result[key] = value
        return result
