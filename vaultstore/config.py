"""
VaultStore Configuration — validated engine settings.

Reads optional overrides from environment variables named
``VAULTSTORE_<FIELD>`` (for example ``VAULTSTORE_RETRY_ATTEMPTS=5``).

Security Note:
    Configuration never carries key material. Passwords are supplied per
    call and are never stored.
"""
import os
import logging
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger("vaultstore")

ENV_PREFIX = "VAULTSTORE_"

MiB = 1024 * 1024


class StorageConfig(BaseModel):
    """Validated storage engine configuration."""

    # blob transport
    retry_attempts: int = Field(default=3, ge=1, le=10)
    backoff_base_delay: float = Field(default=1.0, ge=0)
    max_blob_size: int = Field(default=10 * MiB, gt=0)
    request_timeout: float = Field(default=30.0, gt=0)
    storage_epochs: int = Field(default=10, ge=1)
    storage_cost_per_byte_epoch: float = Field(default=0.000001, ge=0)
    publisher_url: str = Field(default="http://127.0.0.1:31415")
    aggregator_url: str = Field(default="http://127.0.0.1:31416")
    # compression
    compression_threshold: int = Field(default=1024, ge=0)
    # local cache
    cache_path: Path = Field(default=Path("data/vaultstore-cache.db"))
    cache_max_size: int = Field(default=100 * MiB, gt=0)
    cache_max_entries: int = Field(default=50, ge=1)
    cache_max_age: int = Field(default=24 * 60 * 60, gt=0)  # seconds
    memory_cache_size: int = Field(default=100, ge=1)
    memory_cache_ttl: int = Field(default=5 * 60, gt=0)  # seconds
    # key derivation (Argon2id)
    kdf_time_cost: int = Field(default=3, ge=1)
    kdf_memory_cost: int = Field(default=65536, ge=8)  # KiB
    kdf_parallelism: int = Field(default=1, ge=1, le=64)
    # orchestrator
    max_items: int = Field(default=1000, ge=1)
    batch_concurrency: int = Field(default=3, ge=1)

    @field_validator("publisher_url", "aggregator_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Blob store endpoints must be http(s) URLs."""
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"Blob store URL must be http(s): {v}")
        return v.rstrip("/")

    @model_validator(mode="after")
    def validate_kdf_memory(self) -> "StorageConfig":
        """Argon2 requires at least 8 KiB of memory per lane."""
        if self.kdf_memory_cost < 8 * self.kdf_parallelism:
            raise ValueError(
                f"kdf_memory_cost ({self.kdf_memory_cost} KiB) must be at "
                f"least 8 * kdf_parallelism ({8 * self.kdf_parallelism} KiB)"
            )
        return self

    @property
    def cache_max_age_ms(self) -> int:
        return self.cache_max_age * 1000

    @classmethod
    def from_env(cls, **overrides: Any) -> "StorageConfig":
        """Create a StorageConfig from ``VAULTSTORE_*`` environment variables.

        Keyword overrides win over the environment.

        Returns:
            Populated StorageConfig instance.
        """
        values: dict[str, Any] = {}
        for name in cls.model_fields:
            raw: Optional[str] = os.environ.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is not None:
                values[name] = raw
        values.update(overrides)
        config = cls(**values)
        logger.debug(
            "Loaded storage config from environment (%d override(s))",
            len(values),
        )
        return config
