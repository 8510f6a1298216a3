"""
Centralized configuration management for the IC Verifier service.

Pydantic v2 settings management to enforce strict validation,
zero secret leakage, and fast-failure on invalid configuration.
"""

from functools import lru_cache
from typing import Annotated, Literal, Optional

from pydantic import AnyHttpUrl, Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# -------------------------------------------------------------------------
# Reusable Type Aliases
# -------------------------------------------------------------------------

EnvRequired = Annotated[
    str,
    Field(min_length=1),
]

SensitiveEnv = Annotated[
    Optional[SecretStr],
    Field(
        default=None,
        description="Sensitive credential, redacted from logs",
    ),
]

# S3 bucket naming rules (lower-case, digits, dots, hyphens)
BucketName = Annotated[
    str,
    Field(
        pattern=r"^[a-z0-9][a-z0-9.-]{1,61}[a-z0-9]$",
        description="S3 bucket name (virtual-hosted style addressing)",
    ),
]

AwsRegion = Annotated[
    str,
    Field(
        pattern=r"^[a-z]{2}(-[a-z]+)+-\d$",
        description="AWS region identifier, e.g. ap-southeast-1",
    ),
]


# -------------------------------------------------------------------------
# Settings Model
# -------------------------------------------------------------------------

class Settings(BaseSettings):
    """
    Application settings parsed from the environment.

    Fails fast at startup if the storage bucket is missing or if static
    credentials are selected without keys.
    """

    # ---------------------------------------------------------------------
    # Object storage
    # ---------------------------------------------------------------------

    storage_bucket: BucketName

    aws_region: AwsRegion = "ap-southeast-1"

    storage_host: Annotated[
        Optional[str],
        Field(
            default=None,
            description=(
                "Override for the storage endpoint host. Defaults to "
                "{bucket}.s3.{region}.amazonaws.com"
            ),
        ),
    ]

    storage_key_prefix: Annotated[
        str,
        Field(
            default="ic-verification",
            pattern=r"^[a-zA-Z0-9_-]+$",
            description="Key prefix for transient IC objects",
        ),
    ]

    orphan_max_age_seconds: Annotated[
        int,
        Field(
            default=3600,
            ge=60,
            description=(
                "Objects under the key prefix older than this are deleted "
                "by the orphan sweep"
            ),
        ),
    ]

    # ---------------------------------------------------------------------
    # Text extraction
    # ---------------------------------------------------------------------

    extraction_host: Annotated[
        Optional[str],
        Field(
            default=None,
            description=(
                "Override for the text-extraction endpoint host. Defaults "
                "to rekognition.{region}.amazonaws.com"
            ),
        ),
    ]

    # ---------------------------------------------------------------------
    # Credentials
    # ---------------------------------------------------------------------

    credential_source: Literal["instance_metadata", "static"] = (
        "instance_metadata"
    )

    instance_metadata_url: Annotated[
        AnyHttpUrl,
        Field(
            default="http://169.254.169.254",
            description="Instance metadata / role-vending endpoint",
        ),
    ]

    imds_v2_enabled: Annotated[
        bool,
        Field(
            default=True,
            description="Request an IMDSv2 session token before reading credentials",
        ),
    ]

    imds_token_ttl_seconds: Annotated[
        int,
        Field(default=21600, ge=1, le=21600),
    ]

    static_access_key_id: Optional[str] = None
    static_secret_access_key: SensitiveEnv
    static_session_token: SensitiveEnv

    credential_cache_enabled: Annotated[
        bool,
        Field(
            default=False,
            description=(
                "Reuse role credentials until shortly before expiry. "
                "Disabled by default: credentials are fetched per call."
            ),
        ),
    ]

    credential_refresh_margin_seconds: Annotated[
        int,
        Field(default=300, ge=0),
    ]

    # ---------------------------------------------------------------------
    # Operational Boundaries
    # ---------------------------------------------------------------------

    request_timeout_seconds: Annotated[
        float,
        Field(
            default=5.0,
            gt=0,
            le=10,
            description="Upper bound for every outbound call",
        ),
    ]

    max_image_size_mb: Annotated[
        int,
        Field(
            default=5,
            ge=1,
            le=5,
            description="Per-image size ceiling (text extraction limit is 5MB)",
        ),
    ]

    # ---------------------------------------------------------------------
    # IC analysis
    # ---------------------------------------------------------------------

    dob_century_pivot: Annotated[
        int,
        Field(
            default=25,
            ge=0,
            le=99,
            description="Two-digit years <= pivot are read as 20YY, else 19YY",
        ),
    ]

    manual_review_confidence_threshold: Annotated[
        float,
        Field(default=80.0, ge=0.0, le=100.0),
    ]

    # ---------------------------------------------------------------------
    # Validators
    # ---------------------------------------------------------------------

    @model_validator(mode="after")
    def static_credentials_complete(self):
        if self.credential_source == "static":
            if not self.static_access_key_id or self.static_secret_access_key is None:
                raise ValueError(
                    "credential_source=static requires "
                    "static_access_key_id and static_secret_access_key."
                )
        return self

    # ---------------------------------------------------------------------
    # Derived endpoints
    # ---------------------------------------------------------------------

    @property
    def resolved_storage_host(self) -> str:
        return self.storage_host or (
            f"{self.storage_bucket}.s3.{self.aws_region}.amazonaws.com"
        )

    @property
    def resolved_extraction_host(self) -> str:
        return self.extraction_host or (
            f"rekognition.{self.aws_region}.amazonaws.com"
        )

    @property
    def max_image_bytes(self) -> int:
        return self.max_image_size_mb * 1024 * 1024

    model_config = SettingsConfigDict(
        env_prefix="VERIFIER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
        frozen=True,
    )


# -------------------------------------------------------------------------
# Settings Dependency Provider
# -------------------------------------------------------------------------

@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Dependency injection provider for application settings.

    Uses an explicit singleton pattern within the FastAPI lifecycle.
    """
    return Settings()  # singleton within process
