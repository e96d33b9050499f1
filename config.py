# config.py - Conversation Simulator Configuration
from typing import Optional, Dict, Any
from loguru import logger
from pydantic_settings import BaseSettings


class Config(BaseSettings):
    """Runtime configuration for the conversation simulator"""

    # ==========================================
    # STORAGE
    # ==========================================

    mongodb_url: str = "mongodb://localhost:27017"
    database_name: str = "conversation_simulator"
    redis_url: str = "redis://localhost:6379"

    # ==========================================
    # MESSAGING PLATFORM
    # ==========================================

    platform_client_id: Optional[str] = None
    platform_client_secret: Optional[str] = None
    csds_url_template: str = (
        "https://api.liveperson.net/api/account/{account_id}/service/baseURI.json?version=1.0"
    )
    platform_request_timeout: int = 15  # seconds
    platform_retry_attempts: int = 3

    # ==========================================
    # LLM
    # ==========================================

    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    analysis_temperature: float = 0.2
    consumer_temperature: float = 0.7

    # ==========================================
    # SIMULATION LIMITS
    # ==========================================

    max_conversations_limit: int = 20
    max_queuing: int = 5
    default_max_turns: int = 20
    default_consumer_delay_seconds: int = 10
    conversation_spawn_interval_ms: int = 100

    # Cache TTLs (seconds)
    conversation_cache_ttl: int = 14400  # 4 hours
    task_cache_ttl: int = 86400
    consumer_token_ttl: int = 3600
    app_token_default_ttl: int = 1800
    domain_cache_ttl: int = 3600

    # ==========================================
    # RESPONDER SWEEP
    # ==========================================

    responder_enabled: bool = True
    responder_interval_ms: int = 1000
    responder_max_concurrency: int = 10
    responder_max_backoff_ms: int = 30000
    post_survey_timeout_ms: int = 120000  # 2 minutes

    # App settings
    environment: str = "development"
    log_level: str = "INFO"

    class Config:
        env_file = ".env"

    # ==========================================
    # VALIDATION AND WARNINGS
    # ==========================================

    def validate_configuration(self) -> Dict[str, Any]:
        """Check settings and report what is missing or inconsistent"""
        warnings = []
        errors = []

        if not self.platform_client_id or not self.platform_client_secret:
            warnings.append("Platform client credentials not configured - conversations cannot be created")

        if not self.openai_api_key:
            warnings.append("OPENAI_API_KEY not configured - using fallback consumer replies and assessments")

        if self.max_queuing < 1:
            errors.append("MAX_QUEUING must be at least 1")

        if self.max_conversations_limit < 1:
            errors.append("MAX_CONVERSATIONS_LIMIT must be at least 1")

        if self.responder_interval_ms > self.responder_max_backoff_ms:
            warnings.append("RESPONDER_INTERVAL_MS exceeds RESPONDER_MAX_BACKOFF_MS - backoff is disabled")

        return {
            "valid": not errors,
            "warnings": warnings,
            "errors": errors,
            "environment": self.environment,
        }

    def get_simulation_limits(self) -> Dict[str, int]:
        return {
            "max_conversations_limit": self.max_conversations_limit,
            "max_queuing": self.max_queuing,
            "default_max_turns": self.default_max_turns,
            "default_consumer_delay_seconds": self.default_consumer_delay_seconds,
        }

    def log_configuration_status(self) -> None:
        """Log configuration summary at startup"""
        status = self.validate_configuration()

        logger.info(f"🔧 Environment: {self.environment}")
        logger.info(f"🔧 Simulation limits: {self.get_simulation_limits()}")

        for warning in status["warnings"]:
            logger.warning(f"⚠️ {warning}")

        for error in status["errors"]:
            logger.error(f"❌ {error}")

        if status["valid"]:
            logger.info("✅ Configuration validated")


settings = Config()
