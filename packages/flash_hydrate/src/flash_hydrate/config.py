"""
Runtime settings for query composition and hydration.
"""

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class HydrateSettings(BaseSettings):
    """
    Settings read from ``FLASH_HYDRATE_*`` environment variables or ``.env``.

    Example:
        >>> HydrateSettings(CONCURRENT_ATTACH_FETCH=False).CONCURRENT_ATTACH_FETCH
        False
    """

    model_config = SettingsConfigDict(
        env_prefix="FLASH_HYDRATE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- Attach fetching ---
    # Sibling fetch functions run in one asyncio.TaskGroup when enabled
    CONCURRENT_ATTACH_FETCH: bool = True

    # --- Diagnostics ---
    LOG_COMPILED_SQL: bool = False

    # --- Pagination ---
    DEFAULT_PAGE_SIZE: int = 50
    MAX_PAGE_SIZE: int = 500

    @model_validator(mode="after")
    def validate_page_sizes(self) -> "HydrateSettings":
        """Ensures the default page never exceeds the hard maximum."""
        if self.DEFAULT_PAGE_SIZE < 1:
            raise ValueError("DEFAULT_PAGE_SIZE must be at least 1.")
        if self.DEFAULT_PAGE_SIZE > self.MAX_PAGE_SIZE:
            raise ValueError("DEFAULT_PAGE_SIZE cannot exceed MAX_PAGE_SIZE.")
        return self


# Singleton instance, read at call time by the query set and hydrator
hydrate_settings = HydrateSettings()
