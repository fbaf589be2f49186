from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Client settings loaded from environment variables."""

    # Ollama server
    ollama_base_url: str = "http://localhost:11434"
    ollama_default_model: str = "llava:13b"
    ollama_embedding_model: str = "nomic-embed-text"

    # HTTP client timeouts (seconds)
    phantom_http_connect_timeout: float = 5.0
    phantom_http_read_timeout: float = 120.0

    # Logging
    phantom_log_level: str = "info"
    phantom_log_format: str = "json"  # "json" or "console"

    model_config = {"env_prefix": "", "case_sensitive": False, "env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
