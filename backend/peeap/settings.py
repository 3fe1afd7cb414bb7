from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=None, extra="ignore")

    # Runtime
    environment: str = Field(default="development", validation_alias="NODE_ENV")
    port: int = Field(default=8080, validation_alias="PORT")

    # CORS / Frontend
    frontend_base_url: str = Field(
        default="https://my.peeap.com", validation_alias="FRONTEND_BASE_URL"
    )
    frontend_urls: str | None = Field(default=None, validation_alias="FRONTEND_URLS")
    # Used to build customer-facing payment links (invoices, checkout).
    public_app_url: str = Field(default="https://my.peeap.com", validation_alias="PUBLIC_APP_URL")

    # AWS / data
    aws_region: str = Field(default="us-east-1", validation_alias="AWS_REGION")
    ddb_table_name: str | None = Field(default=None, validation_alias="DDB_TABLE_NAME")
    # DynamoDB Local for development (e.g. http://localhost:8000).
    ddb_endpoint_url: str | None = Field(default=None, validation_alias="DDB_ENDPOINT_URL")

    # Public checkout / webhook hardening
    public_rate_limit_rpm: int = Field(default=120, validation_alias="PUBLIC_RATE_LIMIT_RPM")

    # Auth (Cognito)
    cognito_user_pool_id: str | None = Field(
        default=None, validation_alias="COGNITO_USER_POOL_ID"
    )
    cognito_client_id: str | None = Field(
        default=None, validation_alias="COGNITO_CLIENT_ID"
    )
    cognito_region: str = Field(default="us-east-1", validation_alias="COGNITO_REGION")

    # Crypto (pagination tokens)
    token_enc_key: str | None = Field(default=None, validation_alias="TOKEN_ENC_KEY")

    # Monime mobile-money rail
    monime_access_token: str | None = Field(default=None, validation_alias="MONIME_ACCESS_TOKEN")
    monime_space_id: str | None = Field(default=None, validation_alias="MONIME_SPACE_ID")
    monime_base_url: str = Field(default="https://api.monime.io/v1", validation_alias="MONIME_BASE_URL")
    monime_financial_account_id: str | None = Field(
        default=None, validation_alias="MONIME_FINANCIAL_ACCOUNT_ID"
    )
    monime_webhook_secret: str | None = Field(default=None, validation_alias="MONIME_WEBHOOK_SECRET")
    default_currency: str = Field(default="SLE", validation_alias="DEFAULT_CURRENCY")

    # Push (FCM legacy HTTP API)
    fcm_server_key: str | None = Field(default=None, validation_alias="FCM_SERVER_KEY")
    fcm_endpoint: str = Field(
        default="https://fcm.googleapis.com/fcm/send", validation_alias="FCM_ENDPOINT"
    )

    # Local NFC reader agent
    nfc_agent_url: str = Field(default="ws://127.0.0.1:9876", validation_alias="NFC_AGENT_URL")
    nfc_agent_ping_interval_s: float = Field(default=15.0, validation_alias="NFC_AGENT_PING_INTERVAL_S")
    nfc_agent_reconnect_max_s: float = Field(default=30.0, validation_alias="NFC_AGENT_RECONNECT_MAX_S")

    # Dashboards poll; keep aggregate queries off the hot path.
    analytics_cache_ttl_s: int = Field(default=60, validation_alias="ANALYTICS_CACHE_TTL_S")

    # ---- helpers / derived flags ----
    @property
    def normalized_environment(self) -> str:
        v = (self.environment or "").strip().lower()
        if v in ("prod", "production"):
            return "production"
        if v in ("stage", "staging"):
            return "staging"
        if v in ("dev", "development"):
            return "development"
        return v or "development"

    @property
    def is_production(self) -> bool:
        return self.normalized_environment == "production"

    @property
    def is_development(self) -> bool:
        return self.normalized_environment == "development"

    def require_in_production(self) -> None:
        """
        Enforce required settings in production.

        Development/staging may run with partial config for local work,
        but production must be fully configured.
        """
        if not self.is_production:
            return

        missing: list[str] = []

        if not self.cognito_user_pool_id:
            missing.append("COGNITO_USER_POOL_ID")
        if not self.cognito_client_id:
            missing.append("COGNITO_CLIENT_ID")
        if not self.ddb_table_name:
            missing.append("DDB_TABLE_NAME")

        # Pagination tokens must never be encrypted with a default key in prod.
        if not self.token_enc_key:
            missing.append("TOKEN_ENC_KEY")

        if not self.monime_access_token:
            missing.append("MONIME_ACCESS_TOKEN")
        if not self.monime_space_id:
            missing.append("MONIME_SPACE_ID")
        # Inbound Monime webhooks are only trusted when signed with this secret.
        if not self.monime_webhook_secret:
            missing.append("MONIME_WEBHOOK_SECRET")

        if missing:
            raise RuntimeError(
                "Missing required production environment variables: "
                + ", ".join(missing)
            )

    def to_log_safe_dict(self) -> dict[str, object]:
        """
        A redacted representation safe for structured logs / diagnostics.
        """
        def _has(v: object) -> bool:
            return v is not None and str(v).strip() != ""

        return {
            "environment": self.normalized_environment,
            "port": self.port,
            "frontend": {
                "frontend_base_url": self.frontend_base_url,
                "frontend_urls": self.frontend_urls,
                "public_app_url": self.public_app_url,
            },
            "aws": {
                "aws_region": self.aws_region,
                "ddb_table_name": self.ddb_table_name,
                "ddb_endpoint_url": self.ddb_endpoint_url,
            },
            "auth": {
                "cognito_user_pool_id": self.cognito_user_pool_id,
                "cognito_client_id": self.cognito_client_id,
                "cognito_region": self.cognito_region,
                "token_enc_key_configured": _has(self.token_enc_key),
            },
            "integrations": {
                "monime_base_url": self.monime_base_url,
                "monime_access_token_configured": _has(self.monime_access_token),
                "monime_space_id_configured": _has(self.monime_space_id),
                "monime_webhook_secret_configured": _has(self.monime_webhook_secret),
                "default_currency": self.default_currency,
                "fcm_server_key_configured": _has(self.fcm_server_key),
                "nfc_agent_url": self.nfc_agent_url,
            },
        }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    s = Settings()
    s.require_in_production()
    return s


# Module-level singleton used across the app.
settings = get_settings()
