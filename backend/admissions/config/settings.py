"""Application Settings - Central Configuration"""
from functools import lru_cache
from typing import List
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # MongoDB
    mongo_uri: str = "mongodb://localhost:27017"
    mongo_db: str = "admissions_workflow_dev"

    # Collaborator services
    document_service_url: str = "http://localhost:8101"
    payment_service_url: str = "http://localhost:8102"
    identity_service_url: str = "http://localhost:8103"
    application_records_url: str = "http://localhost:8104"
    notification_service_url: str = "http://localhost:8105"
    integration_service_url: str = "http://localhost:8106"
    external_request_timeout_seconds: float = 10.0

    # Fee types fetched from the payment service for every guard context
    payment_fee_types: str = "application_fee,enrollment_deposit"
    default_fee_type: str = "application_fee"

    # Transition executor
    transition_lock_wait_seconds: float = 5.0
    transition_lock_lease_seconds: int = 30
    transition_lock_poll_interval_seconds: float = 0.05
    transition_max_conflict_retries: int = 3
    cache_active_pointer: bool = False  # Pointer is read uncached unless enabled

    # Logging
    logs_path: str = "./logs"
    log_level: str = "INFO"

    # CORS - set to "*" to allow all origins
    cors_origins: str = "*"

    # Scheduler
    scheduler_enabled: bool = True
    scheduler_interval_seconds: int = 10  # Process the action outbox every 10 seconds
    dispatch_batch_size: int = 50
    dispatch_max_retries: int = 5
    dispatch_backoff_base_seconds: int = 60
    dispatch_backoff_max_seconds: int = 3600
    dispatch_lock_duration_seconds: int = 60  # How long to hold lock on an action
    stale_lock_cleanup_minutes: int = 10  # Clean up locks older than this
    automatic_sweep_interval_minutes: int = 5
    automatic_sweep_batch_size: int = 200

    # Environment
    environment: str = "development"
    debug: bool = True

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins string to list"""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def payment_fee_types_list(self) -> List[str]:
        """Parse fee types string to list"""
        return [fee.strip() for fee in self.payment_fee_types.split(",") if fee.strip()]


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()
