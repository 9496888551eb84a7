from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    ANTHROPIC_API_KEY: str = ""
    ANTHROPIC_BASE_URL: str = "https://api.anthropic.com/"
    ANTHROPIC_API_VERSION: str = "2023-06-01"
    ANTHROPIC_MODEL: str = "claude-sonnet-4-20250514"
    MAX_TOKENS: int = 4096

    ROOT_DIR: Path = Path(__file__).resolve().parent.parent.parent
    DATA_DIR: Path = Path(__file__).resolve().parent.parent.parent / "data"
    DB_PATH: Path = Path(__file__).resolve().parent.parent.parent / "data" / "flowdesk.db"

    # Empty means: $SHELL if it exists, else the platform default
    TERMINAL_SHELL: str = ""

    TOOL_CALL_REMOVAL_DELAY_SECONDS: float = 3.0

    LOG_LEVEL: str = "INFO"

    APP_NAME: str = "FlowDesk"
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    model_config = {
        "env_file": str(Path(__file__).resolve().parent.parent.parent / ".env"),
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


settings = Settings()
