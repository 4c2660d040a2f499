from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    APP_NAME: str = "Inventory Control Engine"
    DATABASE_URL: str = "sqlite:///./inventory.db"
    DATABASE_ECHO: bool = False

    # Upper bound for lock waits and statements inside a mutating transaction
    TRANSACTION_TIMEOUT_SECONDS: int = 30

    # Reservations
    RESERVATION_EXPIRY_MINUTES: int = 30
    MAX_RELEASE_BATCH_SIZE: int = 500

    # Quantity updates and cycle counts (percent)
    VARIANCE_WARNING_THRESHOLD: float = 10.0
    VARIANCE_ERROR_THRESHOLD: float = 25.0
    AUTO_APPROVE_THRESHOLD: float = 100.0

    # Bulk CSV import
    IMPORT_MAX_ROWS: int = 10000
    IMPORT_MAX_FILE_SIZE_BYTES: int = 10 * 1024 * 1024
    IMPORT_MAX_ERRORS_RETURNED: int = 100

    # Webhook: list of notification callback URLs (comma-separated)
    WEBHOOK_URLS: str = ""
    WEBHOOK_TIMEOUT_SECONDS: float = 10.0

    # Audit entries are kept for seven years
    AUDIT_RETENTION_DAYS: int = 2555

    model_config = {"env_file": ".env"}


settings = Settings()
