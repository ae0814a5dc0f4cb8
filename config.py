import logging

from decouple import config
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # App Configuration
    app_name: str = "RecordBridge"

    # Supabase Configuration
    supabase_url: str = config("SUPABASE_URL", default="")
    supabase_key: str = config("SUPABASE_KEY", default="")

    # Monitoring & Logging
    log_level: str = config("LOG_LEVEL", default="INFO")
    log_format: str = config("LOG_FORMAT", default="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    record_memory_metrics: bool = config("RECORD_MEMORY_METRICS", cast=bool, default=True)

    # Execution Logs
    execution_log_sample_size: int = config("EXECUTION_LOG_SAMPLE_SIZE", cast=int, default=10)
    execution_log_default_limit: int = config("EXECUTION_LOG_DEFAULT_LIMIT", cast=int, default=20)

    # Pipeline Limits
    max_batch_size: int = config("MAX_BATCH_SIZE", cast=int, default=50000)  # 0 disables the cap
    max_expression_length: int = config("MAX_EXPRESSION_LENGTH", cast=int, default=1000)
    max_expression_depth: int = config("MAX_EXPRESSION_DEPTH", cast=int, default=50)

    # Compliance
    compliance_warning_ratio: float = config("COMPLIANCE_WARNING_RATIO", cast=float, default=0.9)

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def is_supabase_configured(self) -> bool:
        """Check if Supabase credentials are present"""
        return bool(self.supabase_url and self.supabase_key)

def configure_logging(level: str = None):
    """Configure root logging from settings"""
    level = (level or settings.log_level).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format=settings.log_format,
    )
    logging.getLogger(__name__).info(f"{settings.app_name} logging configured at {level}")

# Global settings instance
settings = Settings()
