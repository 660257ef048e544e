"""
Configuration settings for the HVAC runtime engine
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings"""

    # Database
    db_host: str = "postgres"
    db_port: str = "5432"
    db_name: str = "hvac_runtime_db"
    db_user: str = "hvac_user"
    db_password: str = "hvac_password"
    database_url: str = ""

    # API Settings
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    debug: bool = False

    # Thermostat API
    thermostat_api_url: str = "https://api.ecobee.com/1"
    thermostat_token_url: str = "https://api.ecobee.com/token"
    thermostat_client_id: Optional[str] = None
    thermostat_request_timeout: int = 20  # seconds
    token_refresh_margin_seconds: int = 120

    # Event delivery
    core_ingest_url: Optional[str] = None
    delivery_retries: int = 3
    delivery_retry_delay_seconds: float = 1.0
    delivery_timeout: int = 20  # seconds

    # Polling
    poll_concurrency: int = 5
    error_backoff_seconds: int = 120
    connectivity_check_seconds: int = 60
    scheduler_tick_seconds: int = 5

    # Runtime accounting
    max_accumulate_seconds: int = 600
    reachability_stale_seconds: int = 900
    max_time_between_emits_seconds: int = 43200  # 12 hours
    temperature_tolerance_f: float = 0.5
    humidity_tolerance: float = 2.0
    fan_only_is_active: bool = True
    split_sessions_on_fan_change: bool = True

    # Adaptive scheduling (seconds)
    poll_min_seconds: int = 60
    poll_max_seconds: int = 900
    poll_offline_seconds: int = 900
    poll_idle_seconds: int = 600
    poll_active_seconds: int = 120
    poll_long_running_seconds: int = 300
    poll_fresh_seconds: int = 90
    poll_transition_seconds: int = 60
    poll_fresh_window_seconds: int = 300
    long_running_threshold_seconds: int = 3600

    # Stale session cleanup
    stale_session_max_hours: int = 24
    stale_session_max_age_hours: int = 48

    # Logging
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = False

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        # Build database_url from components unless given explicitly
        if not self.database_url:
            self.database_url = f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"


# Global settings instance
settings = Settings()
