"""
Application Configuration
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Database
    database_url: Optional[str] = None

    # Redis & Job Queue
    redis_url: Optional[str] = None

    # Environment
    environment: str = "development"
    log_level: str = "INFO"

    # Web3 / Contract
    rpc_url: str = "http://127.0.0.1:8545"
    private_key: Optional[str] = None
    chain_id: int = 11155111  # Sepolia
    contract_address: str = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
    contract_abi_path: Optional[str] = None  # Hardhat artifact or bare ABI list
    verify_contract_code: bool = True
    rpc_timeout_seconds: int = 10

    # Pinning service (Pinata-compatible)
    pinata_api_url: str = "https://api.pinata.cloud"
    pinata_gateway_url: str = "https://gateway.pinata.cloud/ipfs"
    pinata_jwt: Optional[str] = None
    pinata_api_key: Optional[str] = None
    pinata_api_secret: Optional[str] = None
    pinning_timeout_seconds: int = 10
    max_upload_size_mb: int = 50

    # Chain Watcher
    confirmation_depth: int = 1  # blocks, including the inclusion block
    confirmation_timeout_seconds: int = 300
    confirmation_poll_interval_ms: int = 3000
    max_attempts: int = 5
    retry_min_backoff_ms: int = 1000
    retry_max_backoff_ms: int = 60000

    # Read-Repair Cache
    cache_ttl_seconds: int = 300

    # Idempotency / Reconciliation
    idempotency_ttl_hours: int = 24
    reconciliation_interval_seconds: int = 60
    stale_dispatch_seconds: int = 120

    # Worker Configuration
    worker_processes: int = 2
    worker_threads: int = 4
    inline_worker: bool = False  # run a Dramatiq worker inside the API process

    # Circuit Breaker Configuration
    circuit_breaker_fail_max: int = 5  # Consecutive failures before opening circuit
    circuit_breaker_reset_timeout: int = 60  # Seconds before auto-recovery attempt

    # Sentry Error Tracking
    sentry_dsn: Optional[str] = None
    sentry_environment: Optional[str] = None  # Defaults to environment setting

    class Config:
        env_file = ".env"
        case_sensitive = False


REQUIRED_IN_PRODUCTION = ("rpc_url", "contract_address", "private_key", "pinata_jwt")


def validate_production_settings(config: Settings) -> None:
    """
    Fail fast when critical settings are missing in production.

    Raises:
        RuntimeError: listing every missing variable
    """
    if config.environment != "production":
        return

    missing = [name.upper() for name in REQUIRED_IN_PRODUCTION if not getattr(config, name)]
    if missing:
        raise RuntimeError(f"Missing required environment variables: {', '.join(missing)}")


settings = Settings()
