from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Ollama (chat, completion and embeddings)
    ollama_url: str = "http://localhost:11434"
    chat_model: str = "llama3.2:3b"
    embed_model: str = "nomic-embed-text"
    chat_timeout_seconds: float = 300.0
    completion_timeout_seconds: float = 300.0
    embed_timeout_seconds: float = 300.0

    # SearXNG
    searxng_url: str = "http://localhost:8080"
    search_timeout_seconds: float = 100.0
    search_max_queries: int = 3
    search_max_rounds: int = 3
    search_results_per_query: int = 6
    search_complexity: str = ""  # low | medium | high, empty = derive from analysis

    # Page fetching / extraction
    fetch_timeout_seconds: float = 80.0
    content_fetch_count: int = 3
    content_max_chars: int = 15000
    content_min_chars: int = 100

    # Long-term memory
    memory_top_k: int = 5
    memory_min_similarity: float = 0.25
    memory_duplicate_threshold: float = 0.95

    # Conversation
    data_dir: str = "data"
    history_window: int = 12
    response_chunk_chars: int = 0  # 0 = forward backend chunks as they arrive

    # App
    cors_origins: str = "http://localhost:8787"
    app_log_level: str = "INFO"
    noisy_log_level: str = "WARNING"
    log_dir: str = "logs"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",")]

    @property
    def ollama_openai_base_url(self) -> str:
        return f"{self.ollama_url.rstrip('/')}/v1"

    @property
    def searxng_base_url(self) -> str:
        return self.searxng_url.rstrip("/")


settings = Settings()
