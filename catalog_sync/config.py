"""Configuration models and settings for catalog API integration."""

from pathlib import Path
from typing import Optional
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings


class CatalogConfig(BaseSettings):
    """Catalog API connection settings loaded from environment variables."""

    account_name: str = Field(default="", validation_alias="ACCOUNT_NAME")
    environment: str = Field(default="vtexcommercestable", validation_alias="ENVIRONMENT")
    app_key: str = Field(default="", validation_alias="VTEX_API_APPKEY")
    app_token: str = Field(default="", validation_alias="VTEX_API_APPTOKEN")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "populate_by_name": True,
        "extra": "ignore",
    }

    @property
    def base_url(self) -> str:
        """Account-scoped API root, e.g. https://store.vtexcommercestable.com.br/api."""
        return f"https://{self.account_name}.{self.environment}.com.br/api"

    @property
    def is_configured(self) -> bool:
        """Check if we have everything needed to call the API."""
        return bool(self.account_name and self.app_key and self.app_token)


class Config(BaseModel):
    """Main application configuration."""

    catalog: CatalogConfig

    # File paths
    output_dir: Path = Field(default_factory=lambda: Path("./out"))

    # Processing options
    concurrency: int = Field(default=1, ge=1, le=24)
    rate_limit: int = Field(default=40, ge=1, le=200)
    jitter_ms: int = Field(default=100, ge=0, le=5000)
    timeout: float = Field(default=30.0, gt=0)
    max_retries: int = Field(default=3, ge=1, le=10)
    honor_retry_after: bool = False
    category_tree_depth: int = Field(default=5, ge=1)

    dry_run: bool = False

    @property
    def max_jitter(self) -> float:
        return self.jitter_ms / 1000.0


def load_config_from_env(output_dir: Optional[Path] = None) -> Config:
    """Load configuration from environment variables."""
    import os
    from dotenv import load_dotenv
    load_dotenv()

    config = Config(
        catalog=CatalogConfig(),
        concurrency=int(os.getenv("CATALOG_SYNC_CONCURRENCY", "1")),
        rate_limit=int(os.getenv("CATALOG_SYNC_RATE_LIMIT", "40")),
        category_tree_depth=int(os.getenv("CATALOG_SYNC_CATEGORY_TREE_DEPTH", "5")),
        dry_run=os.getenv("CATALOG_SYNC_DRY_RUN", "").lower() == "true",
    )
    if output_dir is not None:
        config.output_dir = output_dir
    return config
