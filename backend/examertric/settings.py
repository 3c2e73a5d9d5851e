from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

class Settings(BaseSettings):
	# Database backing the tree-structured document store and auth users
	database_url: str | None = Field(default=None, validation_alias="DATABASE_URL")

	# Auth configuration
	jwt_secret_key: str = Field(default="change-me", validation_alias="JWT_SECRET_KEY")
	jwt_algorithm: str = Field(default="HS256", validation_alias="JWT_ALGORITHM")
	access_token_expire_minutes: int = Field(default=120, validation_alias="ACCESS_TOKEN_EXPIRE_MINUTES")
	# Legacy admin identity, honoured alongside the admin claim
	admin_email: str | None = Field(default=None, validation_alias="ADMIN_EMAIL")

	# Exam session
	exam_time_limit_minutes: int = Field(default=20, validation_alias="EXAM_TIME_LIMIT_MINUTES")
	exam_written_sample_size: int = Field(default=5, validation_alias="EXAM_WRITTEN_SAMPLE_SIZE")
	exam_audio_sample_size: int = Field(default=5, validation_alias="EXAM_AUDIO_SAMPLE_SIZE")
	exam_timer_enabled: bool = Field(default=True, validation_alias="EXAM_TIMER_ENABLED")
	exam_tick_seconds: float = Field(default=1.0, validation_alias="EXAM_TICK_SECONDS")

	# Audio blobs are written under blob_dir and served from /blobs
	blob_dir: str = Field(default="./blobs", validation_alias="BLOB_DIR")
	public_base_url: str = Field(default="http://localhost:8000", validation_alias="PUBLIC_BASE_URL")

	# Transcription: remote endpoint when configured, in-process Google Cloud Speech otherwise
	speech_function_url: str | None = Field(default=None, validation_alias="SPEECH_FUNCTION_URL")
	speech_language_code: str = Field(default="en-US", validation_alias="SPEECH_LANGUAGE_CODE")
	speech_sample_rate_hertz: int = Field(default=48000, validation_alias="SPEECH_SAMPLE_RATE_HERTZ")

	cors_allow_origins: list[str] = Field(default=["*"], validation_alias="CORS_ALLOW_ORIGINS")

	# pydantic-settings v2 style config
	model_config = SettingsConfigDict(env_file=".env", extra="ignore")

settings = Settings()
