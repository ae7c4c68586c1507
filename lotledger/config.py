# lotledger/config.py
"""Configuration management from environment variables."""
import os

from dotenv import load_dotenv

load_dotenv()


def _database_url():
    url = os.getenv("DATABASE_URL") or os.getenv("POSTGRES_URL")
    # SQLAlchemy 2.x doesn't accept 'postgres://'
    if url and url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql+psycopg2://", 1)
    return url


class Settings:
    """Application configuration, read once from the environment."""

    def __init__(self):
        # Database
        self.DATABASE_URL: str | None = _database_url()
        self.DB_POOL_SIZE: int = int(os.getenv("DB_POOL_SIZE", "5"))
        self.DB_MAX_OVERFLOW: int = int(os.getenv("DB_MAX_OVERFLOW", "10"))

        # Logging
        self.LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

        # Capture
        self.SOURCE_NAME: str = os.getenv("SOURCE_NAME", "copart")
        self.SNAPSHOT_DELIMITER: str = os.getenv("SNAPSHOT_DELIMITER", ",")
        self.INGEST_BATCH_SIZE: int = int(os.getenv("INGEST_BATCH_SIZE", "1000"))
        self.UNKNOWN_RATE_ALERT: float = float(os.getenv("UNKNOWN_RATE_ALERT", "5.0"))

        # Upsert
        self.UPSERT_COMMIT_EVERY: int = int(os.getenv("UPSERT_COMMIT_EVERY", "500"))
        self.VIN_STRICT_CHECK_DIGIT: bool = os.getenv("VIN_STRICT_CHECK_DIGIT", "0") == "1"

        # Outcome heuristics
        self.GRACE_HOURS: float = float(os.getenv("GRACE_HOURS", "24"))
        self.APPROVAL_DAYS: float = float(os.getenv("APPROVAL_DAYS", "7"))
        self.SOLD_CONFIDENCE: float = float(os.getenv("SOLD_CONFIDENCE", "0.85"))
        self.NOT_SOLD_CONFIDENCE: float = float(os.getenv("NOT_SOLD_CONFIDENCE", "0.95"))
        self.ON_APPROVAL_CONFIDENCE: float = float(os.getenv("ON_APPROVAL_CONFIDENCE", "0.60"))
        self.CONFIDENCE_FLOOR: float = float(os.getenv("CONFIDENCE_FLOOR", "0.5"))

        # Locks
        self.LOCK_TTL_MINUTES: int = int(os.getenv("LOCK_TTL_MINUTES", "120"))

    def validate(self) -> None:
        """Validate required configuration."""
        errors = []
        if not self.DATABASE_URL:
            errors.append("DATABASE_URL (or POSTGRES_URL) is required")
        if self.INGEST_BATCH_SIZE <= 0:
            errors.append("INGEST_BATCH_SIZE must be positive")
        if self.UPSERT_COMMIT_EVERY <= 0:
            errors.append("UPSERT_COMMIT_EVERY must be positive")
        for name in ("SOLD_CONFIDENCE", "NOT_SOLD_CONFIDENCE", "ON_APPROVAL_CONFIDENCE", "CONFIDENCE_FLOOR"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                errors.append(f"{name} must be within [0, 1]")
        if errors:
            raise ValueError(f"Configuration errors: {', '.join(errors)}")


settings = Settings()
