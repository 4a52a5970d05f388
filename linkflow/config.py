"""Application configuration via environment variables."""

from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Storage
    storage_backend: str = "json"  # "json", "memory" or "supabase"
    data_dir: Optional[str] = None

    # Supabase
    supabase_url: str = ""
    supabase_service_role_key: str = ""
    supabase_anon_key: str = ""

    # AI analysis
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"

    # Content extraction
    extractor_timeout_s: float = 20.0
    extractor_user_agent: str = "LinkflowBot/1.0 (link enrichment)"

    # Duplicate detection: JSON array of {id, url, title}
    links_file: Optional[str] = None

    # Caller attribution: "header" trusts X-User-Id, "supabase" validates a bearer JWT
    auth_mode: str = "header"

    log_level: str = "INFO"
    dispatch_poll_interval: float = 1.0
    api_host: str = "0.0.0.0"
    api_port: int = 8002

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "env_prefix": "LINKFLOW_"}


settings = Settings()
