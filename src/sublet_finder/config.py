"""Application configuration using pydantic-settings."""

from pathlib import Path

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from sublet_finder.models import Platform


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="SUBLET_FINDER_",
        extra="ignore",
    )

    # Rendering proxy (ScrapingBee-compatible API)
    scrapingbee_api_key: SecretStr = Field(
        default=SecretStr(""),
        description="API key for the rendering proxy",
    )
    scraping_api_url: str = Field(
        default="https://app.scrapingbee.com/api/v1/",
        description="Endpoint of the rendering proxy",
    )
    scraping_country_code: str = Field(
        default="gb",
        description="Proxy exit country for rendered fetches",
    )
    request_timeout_seconds: float = Field(
        default=90.0,
        gt=0,
        description="Timeout for one rendered fetch (render wait included)",
    )
    daily_credit_budget: int = Field(
        default=800,
        ge=0,
        description="Proxy credits allowed per UTC day (0 disables the budget)",
    )
    credit_budget_stop_ratio: float = Field(
        default=0.9,
        gt=0,
        le=1,
        description="Share of the daily budget after which no more requests are sent",
    )
    enforce_request_quotas: bool = Field(
        default=True,
        description="Apply per-platform hourly and daily request limits",
    )

    # Coordinate lookup
    geocoder_base_url: str = Field(default="https://api.postcodes.io")

    # Job pacing
    chunk_size: int = Field(
        default=15,
        ge=1,
        le=500,
        description="Properties consumed per chunk advancement",
    )
    chunk_pacing_seconds: float = Field(
        default=30.0,
        ge=0,
        description="Delay between chunk triggers when running a job to completion",
    )
    strategy_delay_seconds: float = Field(
        default=2.0,
        ge=0,
        description="Delay between sequential strategies for the same property",
    )
    max_concurrency: int = Field(
        default=5,
        ge=1,
        le=50,
        description="Property/platform pairs scraped concurrently within a chunk",
    )
    detection_preview_chars: int = Field(
        default=2000,
        ge=100,
        description="Characters of each response inspected by the match detector",
    )
    platforms: str = Field(
        default="airbnb,spareroom,gumtree",
        description="Comma-separated list of platforms to search",
    )

    # Web API
    web_port: int = Field(default=8000, description="Web server port")
    web_host: str = Field(default="0.0.0.0", description="Web server host")
    scheduler_poll_seconds: float = Field(
        default=60.0,
        ge=1,
        description="Idle poll interval for the background scheduler in serve mode",
    )

    # Database
    database_path: str = Field(default="data/sublet_finder.db")

    @property
    def data_dir(self) -> str:
        """Return the directory containing the database."""
        return str(Path(self.database_path).parent)

    def get_platforms(self) -> tuple[Platform, ...]:
        """Parse platforms string into Platform enum values, keeping order and dropping repeats."""
        seen: list[Platform] = []
        for raw in self.platforms.split(","):
            name = raw.strip().lower()
            if not name:
                continue
            platform = Platform(name)
            if platform not in seen:
                seen.append(platform)
        return tuple(seen)
