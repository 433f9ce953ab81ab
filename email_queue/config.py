import os
from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

load_dotenv()

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    environment: str = os.getenv("ENVIRONMENT", "development")

    # Database
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./email_queue.db")
    database_password: str = os.getenv("DATABASE_PASSWORD", "")

    # Transport: "resend" or "smtp"
    email_transport: str = os.getenv("EMAIL_TRANSPORT", "resend")
    transport_timeout: float = float(os.getenv("TRANSPORT_TIMEOUT", "10"))

    # Resend
    resend_api_key: str = os.getenv("RESEND_API_KEY", "")
    resend_api_url: str = os.getenv("RESEND_API_URL", "https://api.resend.com")

    # SMTP
    smtp_host: str = os.getenv("SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = int(os.getenv("SMTP_PORT", "587"))
    smtp_username: str = os.getenv("SMTP_USERNAME", "")
    smtp_password: str = os.getenv("SMTP_PASSWORD", "")
    smtp_start_tls: bool = os.getenv("SMTP_START_TLS", "true").lower() == "true"

    # Queue policy
    default_from_email: str = os.getenv("DEFAULT_FROM_EMAIL", "noreply@example.org")
    default_from_name: str = os.getenv("DEFAULT_FROM_NAME", "Notifications")
    default_priority: int = int(os.getenv("DEFAULT_PRIORITY", "2"))
    max_attempts: int = int(os.getenv("MAX_ATTEMPTS", "3"))
    drain_batch_size: int = int(os.getenv("DRAIN_BATCH_SIZE", "10"))

    # Circuit breaker
    circuit_failure_threshold: int = int(os.getenv("CIRCUIT_FAILURE_THRESHOLD", "5"))
    circuit_recovery_seconds: float = float(os.getenv("CIRCUIT_RECOVERY_SECONDS", "30"))

    # Logging
    log_dir: str = os.getenv("LOG_DIR", "logs")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    @property
    def transport_credential(self) -> str:
        """Secret that makes the selected transport usable, empty when missing."""
        if self.email_transport == "smtp":
            return self.smtp_password if self.smtp_username else ""
        return self.resend_api_key

    @property
    def has_transport(self) -> bool:
        return bool(self.transport_credential)

    @property
    def has_database_url(self) -> bool:
        """True when DATABASE_URL was supplied rather than left at its default."""
        return "database_url" in self.model_fields_set and bool(self.database_url)

settings = Settings()
