from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

class Settings(BaseSettings):
	gemini_api_key: str | None = Field(default=None, validation_alias="GEMINI_API_KEY")
	# Provider can be "vertex" (Vertex AI Express) or "ai_studio" (Generative Language API)
	gemini_provider: str = Field(default="ai_studio", validation_alias="GEMINI_PROVIDER")
	gemini_model: str = Field(default="gemini-2.5-flash", validation_alias="GEMINI_MODEL")
	vertex_region: str = Field(default="us-central1", validation_alias="GEMINI_VERTEX_REGION")
	vertex_project: str | None = Field(default=None, validation_alias="GEMINI_VERTEX_PROJECT")

	# OpenRouter fallback configuration (optional)
	openrouter_api_key: str | None = Field(default=None, validation_alias="OPENROUTER_API_KEY")
	openrouter_model: str = Field(default="x-ai/grok-4-fast:free", validation_alias="OPENROUTER_MODEL")
	openrouter_base_url: str = Field(default="https://openrouter.ai/api/v1/chat/completions", validation_alias="OPENROUTER_BASE_URL")
	openrouter_referer: str = Field(default="https://localhost", validation_alias="OPENROUTER_HTTP_REFERER")
	openrouter_title: str = Field(default="Lingo Coach", validation_alias="OPENROUTER_TITLE")

	# Speech-to-Text
	speech_language_code: str = Field(default="en-US", validation_alias="SPEECH_LANGUAGE_CODE")

	# Auth
	jwt_secret_key: str = Field(default="change-me", validation_alias="JWT_SECRET_KEY")
	jwt_algorithm: str = Field(default="HS256", validation_alias="JWT_ALGORITHM")
	access_token_expire_minutes: int = Field(default=120, validation_alias="ACCESS_TOKEN_EXPIRE_MINUTES")
	# When enabled a new login terminates the user's other sessions
	single_session_per_user: bool = Field(default=True, validation_alias="SINGLE_SESSION_PER_USER")
	session_retention_days: int = Field(default=7, validation_alias="SESSION_RETENTION_DAYS")
	admin_usernames: str = Field(default="", validation_alias="ADMIN_USERNAMES")

	# Speaking evaluation
	evaluation_guard_seconds: float = Field(default=30.0, validation_alias="EVALUATION_GUARD_SECONDS")
	save_retry_attempts: int = Field(default=3, validation_alias="SAVE_RETRY_ATTEMPTS")
	save_retry_backoff_seconds: float = Field(default=0.5, validation_alias="SAVE_RETRY_BACKOFF_SECONDS")

	leaderboard_size: int = Field(default=50, validation_alias="LEADERBOARD_SIZE")

	log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

	# Database
	database_url: str | None = Field(default=None, validation_alias="DATABASE_URL")

	model_config = SettingsConfigDict(env_file=".env", extra="ignore")

	@property
	def admin_set(self) -> set[str]:
		return {u.strip() for u in self.admin_usernames.split(",") if u.strip()}

settings = Settings()
