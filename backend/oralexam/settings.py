from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

class Settings(BaseSettings):
	# Database
	database_url: str | None = Field(default=None, validation_alias="DATABASE_URL")

	# Auth configuration
	jwt_secret_key: str = Field(default="change-me", validation_alias="JWT_SECRET_KEY")
	jwt_algorithm: str = Field(default="HS256", validation_alias="JWT_ALGORITHM")
	# One week, matching the supervisor session lifetime of the exam rooms
	access_token_expire_minutes: int = Field(default=7 * 24 * 60, validation_alias="ACCESS_TOKEN_EXPIRE_MINUTES")
	# Seed supervisor account, created on startup when both are set
	seed_supervisor_username: str | None = Field(default=None, validation_alias="SEED_SUPERVISOR_USERNAME")
	seed_supervisor_password: str | None = Field(default=None, validation_alias="SEED_SUPERVISOR_PASSWORD")

	# Audio artifacts
	audio_upload_dir: str = Field(default="./uploads/audio", validation_alias="AUDIO_UPLOAD_DIR")
	max_audio_bytes: int = Field(default=50 * 1024 * 1024, validation_alias="MAX_AUDIO_BYTES")

	# Exam defaults (seconds)
	default_preparation_seconds: int = Field(default=60, validation_alias="DEFAULT_PREPARATION_SECONDS")
	default_recording_seconds: int = Field(default=300, validation_alias="DEFAULT_RECORDING_SECONDS")

	# Server-side expiry enforcement; 0 disables the periodic sweep
	expiry_sweep_seconds: int = Field(default=5, validation_alias="EXPIRY_SWEEP_SECONDS")
	# Time after the deadline during which the client's own upload may still arrive
	expiry_grace_seconds: int = Field(default=5, validation_alias="EXPIRY_GRACE_SECONDS")

	# Real-time notifications
	notifier_queue_size: int = Field(default=100, validation_alias="NOTIFIER_QUEUE_SIZE")

	# Client driver
	client_timeout_seconds: float = Field(default=10.0, validation_alias="CLIENT_TIMEOUT_SECONDS")

	log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

	# pydantic-settings v2 style config
	model_config = SettingsConfigDict(env_file=".env", extra="ignore")

settings = Settings()
