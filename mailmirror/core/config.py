"""Mirror configuration settings."""

from datetime import timedelta
from typing import List, Optional

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Settings could not be loaded or failed validation."""
    pass


class MirrorSettings(BaseSettings):
    """Mailbox mirror configuration, read from MAILMIRROR_* variables and .env."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="MAILMIRROR_",
        case_sensitive=False,
        extra="ignore",
    )

    # MongoDB Settings
    mongodb_uri: str = Field(
        default="mongodb://localhost:27017/?directConnection=true",
        description="MongoDB connection string"
    )
    mongodb_database: str = Field(default="mailmirror", description="Database name")

    # Archive Settings
    archive_path: str = Field(default="./archive", description="Root directory for EML artifacts")
    temp_file_max_age_hours: float = Field(
        default=1.0, ge=0,
        description="Age after which orphaned .tmp files are removed at run start"
    )

    # Microsoft Graph Settings
    mailbox: Optional[str] = Field(
        default=None,
        description="Mailbox to mirror (defaults to the signed-in user)"
    )
    graph_base_url: str = Field(default="https://graph.microsoft.com/v1.0")
    graph_access_token: str = Field(default="", description="Bearer token for Graph API")
    request_timeout_seconds: float = Field(default=60.0, gt=0)

    # Sync behavior
    checkpoint_interval: int = Field(
        default=10, ge=1,
        description="Messages per checkpoint group"
    )
    max_parallel_downloads: int = Field(
        default=4, ge=1,
        description="Concurrent downloads inside a checkpoint group"
    )
    overlap_minutes: int = Field(
        default=60, ge=0,
        description="Overlap window subtracted from the last sync time on date fallback"
    )
    exclude_folders: List[str] = Field(
        default_factory=list,
        description="Folder glob patterns to skip (e.g. 'Junk Email', 'Archive/**')"
    )

    # Retry Settings
    retry_max_attempts: int = Field(default=5, ge=1)
    retry_initial_delay_ms: int = Field(default=1000, ge=0)
    retry_max_delay_seconds: float = Field(default=120.0, ge=0)
    retry_jitter_factor: float = Field(default=0.2, ge=0, le=1)
    rate_limit_default_seconds: float = Field(default=30.0, ge=0)

    # Inline transformation
    generate_html: bool = Field(default=False)
    generate_markdown: bool = Field(default=False)
    extract_attachments: bool = Field(default=False)

    @property
    def temp_file_max_age(self) -> timedelta:
        return timedelta(hours=self.temp_file_max_age_hours)

    def to_retry_policy(self):
        """Build the retry policy used around every remote call."""
        from mailmirror.sync.retry import RetryPolicy

        return RetryPolicy(
            max_attempts=self.retry_max_attempts,
            initial_delay_ms=self.retry_initial_delay_ms,
            max_delay_seconds=self.retry_max_delay_seconds,
            jitter_factor=self.retry_jitter_factor,
            rate_limit_default_seconds=self.rate_limit_default_seconds,
        )

    def to_sync_options(self, dry_run: bool = False):
        """Build engine options from these settings."""
        from mailmirror.sync.engine import SyncOptions
        from mailmirror.transform import InlineTransformOptions

        return SyncOptions(
            checkpoint_interval=self.checkpoint_interval,
            max_parallel_downloads=self.max_parallel_downloads,
            exclude_folders=list(self.exclude_folders),
            overlap_minutes=self.overlap_minutes,
            mailbox=self.mailbox,
            dry_run=dry_run,
            transform=InlineTransformOptions(
                generate_html=self.generate_html,
                generate_markdown=self.generate_markdown,
                extract_attachments=self.extract_attachments,
            ),
        )


def get_settings(**overrides) -> MirrorSettings:
    """
    Load settings from the environment, applying explicit overrides.

    Overrides whose value is None are ignored so CLI flags that were not
    given fall through to the environment.

    Raises:
        ConfigurationError: If any value fails validation
    """
    values = {k: v for k, v in overrides.items() if v is not None}
    try:
        return MirrorSettings(**values)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigurationError(f"Invalid configuration: {problems}") from e
