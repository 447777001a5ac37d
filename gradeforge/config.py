from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(env_file=".env")

    app_name: str = "GradeForge"
    debug: bool = False

    # Local durable snapshot (written on every collection mutation)
    snapshot_database_url: str = "sqlite:///gradeforge.db"

    anthropic_api_key: str = ""
    analysis_model: str = "claude-sonnet-4-20250514"
    valuation_model: str = "claude-sonnet-4-20250514"

    # Remote collection store and spreadsheet access.
    # Token acquisition is handled outside this process.
    google_access_token: str = ""
    sheet_url: str = ""

    # Hard cap on simultaneous analysis calls
    concurrency_limit: int = 2

    # Retry policy for the analysis service
    retry_max_attempts: int = 10
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    retry_growth: float = 2.0
    retry_jitter: float = 1.0

    # Quiet period before a remote save, in seconds
    remote_save_delay: float = 60.0

    # Periodic scheduler tick for deferred work; 0 disables the timer
    scheduler_poll_interval: float = 15.0


settings = Settings()


# =============================================================================
# GRADING CONSTANTS
# =============================================================================

GRADING_SYSTEM = "NGA"

GRADE_NAMES: dict[int, str] = {
    10: "GEM MT",
    9: "MINT",
    8: "NM-MT",
    7: "NM",
    6: "EX-MT",
    5: "EX",
    4: "VG-EX",
    3: "VG",
    2: "GOOD",
    1: "POOR",
}

MIN_GRADE = 1
MAX_GRADE = 10


# =============================================================================
# SYNC CONSTANTS
# =============================================================================

# Imported rows without timestamps count down from here so they keep source
# order and always sort below real (epoch-millisecond) timestamps.
SYNTHETIC_EPOCH_MS = 1_000_000_000

REMOTE_COLLECTION_FILE_NAME = "card_collection.json"
