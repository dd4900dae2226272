"""Configuration settings for the application."""

from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Pydantic settings class for the application."""

    # Define the settings with default values and types
    # These will be loaded from environment variables or a .env file if not provided
    API_PORT: int = 8000
    DEBUG: bool = False
    DATA_DIR: str = "./data"
    LOG_LEVEL: str = "info"  # Options: debug, info, warning, error, critical

    # Model configuration
    DEFAULT_MODEL: str | None = None  # falls back to the catalogue's default entry
    ANTHROPIC_API_KEY: str | None = None
    OPENAI_API_KEY: str | None = None
    DEEPSEEK_API_KEY: str | None = None
    TGI_ENDPOINT: str | None = None
    LOCAL_MODEL_PATH: str | None = None

    # Tool transports
    CONTAINER_ENDPOINT: str | None = "http://localhost:8001"
    CONTAINER_HEALTH_PATH: str = "/health"
    DOCUMENT_SERVER_ENDPOINT: str = "http://localhost:8002"

    # Optional JSON overrides for the built-in catalogues
    TOOLS_CONFIG: str | None = None
    MODELS_CONFIG: str | None = None
    PROMPTS_CONFIG: str | None = None

    # Orchestration
    TOOL_TIMEOUT_S: float = 60.0
    MAX_RETRIES: int = 2
    RETRY_BASE_DELAY_MS: int = 1000
    MAX_CONCURRENT_TOOLS: int = 1
    MAX_CONTEXT_TURNS: int = 20
    MAX_FILE_SIZE_MB: int = 100

    class Config:
        """Configuration for Pydantic settings."""

        # Load environment variables from a .env file
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()


def upload_root() -> Path:
    """Directory every uploaded file must live under."""
    return Path(settings.DATA_DIR) / "uploads"
