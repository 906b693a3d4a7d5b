from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

class Settings(BaseSettings):
	# Remote Question Service (REST API that owns the question bank and grading)
	question_service_url: str = Field(default="http://localhost:5000/api", validation_alias="QUESTION_SERVICE_URL")
	# Every Question Service call is bounded; a timeout surfaces as ServiceUnavailable
	request_timeout_seconds: float = Field(default=20.0, validation_alias="REQUEST_TIMEOUT_SECONDS")

	# Session defaults (match the practice page defaults)
	default_target_questions: int = Field(default=10, validation_alias="DEFAULT_TARGET_QUESTIONS")
	default_seconds_per_question: int = Field(default=90, validation_alias="DEFAULT_SECONDS_PER_QUESTION")

	# Local difficulty prediction: "3 correct in a row to level up, miss 2 in a row to level down"
	promote_after_correct: int = Field(default=3, validation_alias="PROMOTE_AFTER_CORRECT")
	demote_after_incorrect: int = Field(default=2, validation_alias="DEMOTE_AFTER_INCORRECT")

	# Database holding resumable session snapshots
	database_url: str | None = Field(default=None, validation_alias="DATABASE_URL")
	# Snapshots untouched for this many days are treated as abandoned and purged
	snapshot_retention_days: int = Field(default=7, validation_alias="SNAPSHOT_RETENTION_DAYS")

	log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

	# pydantic-settings v2 style config
	model_config = SettingsConfigDict(env_file=".env", extra="ignore")

settings = Settings()
