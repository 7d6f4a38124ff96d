"""Configuration models loaded from config/reconciler.yaml."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from iap_reconciler.utils.durations import parse_optional_duration


def _check_duration(value: Optional[str]) -> Optional[str]:
    parse_optional_duration(value)
    return value


class ApplicationConfig(BaseModel):
    """Identity of the application whose purchases are reconciled."""

    package_name: str = Field(..., description="Android package name (e.g., com.example.app)")
    one_time_products: list[str] = Field(
        default_factory=list,
        description="Product IDs verified against the one-time product endpoint",
    )


class AuthorityConfig(BaseModel):
    """Verification authority (Android Publisher API) connection settings."""

    base_url: str = Field(
        default="https://androidpublisher.googleapis.com",
        description="Base URL of the purchases API",
    )
    access_token: Optional[str] = Field(
        None, description="Static bearer token overriding application default credentials (testing only)"
    )
    timeout_seconds: float = Field(default=10.0, gt=0, description="Total request timeout")
    connect_timeout_seconds: float = Field(default=3.0, gt=0, description="Connect timeout")
    max_reconnect_attempts: int = Field(default=3, ge=1, description="Reconnect attempts after a dropped connection")
    reconnect_backoff_seconds: float = Field(default=0.5, ge=0, description="Initial reconnect backoff")


class AcknowledgmentConfig(BaseModel):
    """Acknowledgment scheduler retry policy."""

    max_attempts: int = Field(default=5, ge=1, description="Attempts before raising an overdue alert")
    backoff_multiplier_seconds: float = Field(default=1.0, ge=0, description="Exponential backoff multiplier")
    backoff_max_seconds: float = Field(default=60.0, ge=0, description="Upper bound for a single backoff wait")
    deadline_seconds: float = Field(
        default=3600.0,
        gt=0,
        description="Wall-clock budget for one acknowledgment (platform deadline is 3 days)",
    )


class WebhookConfig(BaseModel):
    """Push endpoint authentication and intake settings."""

    verification_token: Optional[str] = Field(None, description="Shared secret expected in the ?token= query parameter")
    oidc_audience: Optional[str] = Field(None, description="Audience of the push OIDC bearer token")
    oidc_service_account: Optional[str] = Field(None, description="Expected email claim of the push OIDC token")
    allow_unauthenticated: bool = Field(default=False, description="Accept pushes without credentials (local only)")
    queue_size: int = Field(default=1000, ge=1, description="Bounded signal queue capacity")
    workers: int = Field(default=4, ge=1, description="Concurrent signal consumers")


class ReconcilerTuning(BaseModel):
    """Merge loop and idempotency ledger settings."""

    max_cas_retries: int = Field(default=5, ge=1, description="Write attempts before a reconcile conflict is raised")
    ledger_retention: str = Field(default="P7D", description="How long processed signal IDs are kept")

    @field_validator("ledger_retention")
    @classmethod
    def validate_retention(cls, value: str) -> str:
        return _check_duration(value)


class LifecyclePolicy(BaseModel):
    """Time-driven transition policy.

    Durations left unset are driven by platform notifications and
    re-verification; an unset grace period is bounded by the platform maximum.
    """

    pending_timeout: Optional[str] = Field("P3D", description="Pending payment abandoned after this duration")
    grace_period: Optional[str] = Field(None, description="Grace period before account hold")
    account_hold: Optional[str] = Field(None, description="Account hold before revocation")
    sweep_interval_seconds: float = Field(default=60.0, gt=0, description="Expiry sweep interval")

    @field_validator("pending_timeout", "grace_period", "account_hold")
    @classmethod
    def validate_durations(cls, value: Optional[str]) -> Optional[str]:
        return _check_duration(value)


class DownstreamConfig(BaseModel):
    """Pub/Sub topic receiving entitlement transitions."""

    enabled: bool = Field(default=False, description="Publish transitions to Pub/Sub")
    project_id: Optional[str] = Field(None, description="GCP project ID")
    topic: Optional[str] = Field(None, description="Pub/Sub topic name")
    publish_timeout_seconds: float = Field(default=5.0, gt=0, description="Publish result timeout")


class ReconcilerSettings(BaseModel):
    """Complete reconciler.yaml configuration."""

    application: ApplicationConfig
    authority: AuthorityConfig = Field(default_factory=AuthorityConfig)
    acknowledgment: AcknowledgmentConfig = Field(default_factory=AcknowledgmentConfig)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)
    reconciler: ReconcilerTuning = Field(default_factory=ReconcilerTuning)
    lifecycle: LifecyclePolicy = Field(default_factory=LifecyclePolicy)
    downstream: DownstreamConfig = Field(default_factory=DownstreamConfig)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "application": {"package_name": "com.example.app"},
                "webhook": {"verification_token": "change-me"},
                "lifecycle": {"grace_period": "P3D", "account_hold": "P30D"},
            }
        }
    )
