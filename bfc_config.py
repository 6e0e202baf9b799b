"""
Beckn Flow Conformance - Runtime Configuration
Settings are read from BFC_* environment variables and validated with pydantic.
"""

from pathlib import Path
from typing import Dict, Optional
import os

from pydantic import BaseModel, Field, field_validator

DEFAULT_SPEC_DIR = Path(__file__).resolve().parent / "config" / "extraction_specs"

_TRUTHY = {"1", "true", "yes", "on"}

class ConformanceSettings(BaseModel):
    store_backend: str = Field("memory", pattern=r'^(memory|redis)$')

    redis_host: str = "localhost"
    redis_port: int = Field(6379, gt=0, le=65535)
    redis_db: int = Field(0, ge=0)
    redis_password: Optional[str] = None
    redis_ssl: bool = False

    # 0 disables expiry; the in-memory store never expires snapshots
    snapshot_ttl_seconds: int = Field(3600, ge=0)
    key_prefix: str = Field("bfc", min_length=1)

    extraction_spec_dir: str = str(DEFAULT_SPEC_DIR)
    log_level: str = "INFO"

    circuit_failure_threshold: int = Field(5, gt=0)
    circuit_recovery_seconds: float = Field(30.0, gt=0)

    class Config:
        json_schema_extra = {
            "example": {
                "store_backend": "redis",
                "redis_host": "redis.internal",
                "redis_port": 6379,
                "snapshot_ttl_seconds": 3600,
                "key_prefix": "bfc",
                "log_level": "INFO"
            }
        }

    @field_validator('log_level')
    @classmethod
    def _known_level(cls, value: str) -> str:
        level = value.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level: {value}")
        return level

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "ConformanceSettings":
        """Build settings from BFC_* variables; unset variables keep defaults."""
        env = os.environ if environ is None else environ
        mapping = {
            'store_backend': 'BFC_STORE_BACKEND',
            'redis_host': 'BFC_REDIS_HOST',
            'redis_port': 'BFC_REDIS_PORT',
            'redis_db': 'BFC_REDIS_DB',
            'redis_password': 'BFC_REDIS_PASSWORD',
            'snapshot_ttl_seconds': 'BFC_SNAPSHOT_TTL_SECONDS',
            'key_prefix': 'BFC_KEY_PREFIX',
            'extraction_spec_dir': 'BFC_EXTRACTION_SPEC_DIR',
            'log_level': 'BFC_LOG_LEVEL',
            'circuit_failure_threshold': 'BFC_CIRCUIT_FAILURE_THRESHOLD',
            'circuit_recovery_seconds': 'BFC_CIRCUIT_RECOVERY_SECONDS',
        }
        values = {name: env[var] for name, var in mapping.items() if env.get(var)}
        if env.get('BFC_REDIS_SSL'):
            values['redis_ssl'] = env['BFC_REDIS_SSL'].strip().lower() in _TRUTHY
        return cls(**values)

    @property
    def ttl(self) -> Optional[int]:
        return self.snapshot_ttl_seconds or None
