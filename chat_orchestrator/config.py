from pydantic import BaseModel
import os

class Settings(BaseModel):
    max_tasks: int = int(os.getenv("APP_MAX_TASKS", "100"))
    max_messages: int = int(os.getenv("APP_MAX_MESSAGES", "200"))
    step_timeout_seconds: float = float(os.getenv("APP_STEP_TIMEOUT_SECONDS", "120"))
    tool_timeout_seconds: float = float(os.getenv("APP_TOOL_TIMEOUT_SECONDS", "8"))
    max_tool_rounds: int = int(os.getenv("APP_MAX_TOOL_ROUNDS", "2"))
    log_level: str = os.getenv("APP_LOG_LEVEL", "INFO")

    #Tool cache
    tool_cache_ttl_seconds: float = float(os.getenv("APP_TOOL_CACHE_TTL_SECONDS", "300"))
    tool_cache_max_entries: int = int(os.getenv("APP_TOOL_CACHE_MAX_ENTRIES", "1000"))

    #Retry Configuration
    retry_max_attempts: int = int(os.getenv("APP_RETRY_MAX_ATTEMPTS","3"))
    retry_base_delay: float = float(os.getenv("APP_RETRY_BASE_DELAY","0.3"))
    retry_max_delay: float = float(os.getenv("APP_RETRY_MAX_DELAY","2.0"))
    retry_jitter: float = float(os.getenv("APP_RETRY_JITTER","0.2"))

    #Upstream providers (OpenAI-compatible chat completions)
    upstream_timeout_seconds: float = float(os.getenv("APP_UPSTREAM_TIMEOUT_SECONDS", "60"))
    default_temperature: float = float(os.getenv("APP_DEFAULT_TEMPERATURE", "0.7"))
    text_api_key: str = os.getenv("DEEPSEEK_API_KEY", "")
    text_base_url: str = os.getenv("APP_TEXT_BASE_URL", "https://api.deepseek.com")
    text_model: str = os.getenv("APP_TEXT_MODEL", "deepseek-chat")
    vision_api_key: str = os.getenv("QWEN_API_KEY", "")
    vision_base_url: str = os.getenv("APP_VISION_BASE_URL", "https://dashscope.aliyuncs.com/compatible-mode/v1")
    vision_model: str = os.getenv("APP_VISION_MODEL", "qwen-vl-plus")

    def features(self) -> dict:
        return {
            "text": bool(self.text_api_key),
            "vision": bool(self.vision_api_key),
        }

settings = Settings()
