"""Application configuration management."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import os

from dotenv import load_dotenv


def _load_env() -> None:
	"""Load environment variables from the first .env file that exists."""

	candidates = [
		Path(__file__).resolve().parent.parent / ".env",
		Path(__file__).resolve().parent / ".env",
		Path.cwd() / ".env",
	]

	loaded = False
	for env_path in candidates:
		if env_path.exists():
			load_dotenv(dotenv_path=env_path, override=False)
			loaded = True

	if not loaded:
		load_dotenv()


def _env_bool(key: str, default: bool = False) -> bool:
	value = os.getenv(key)
	if value is None:
		return default
	return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(key: str) -> int | None:
	value = os.getenv(key)
	if value is None or not value.strip():
		return None
	return int(value)


_load_env()


@dataclass(slots=True)
class Settings:
	"""Centralised application settings loaded from environment variables."""

	mongo_uri: str = field(default_factory=lambda: os.getenv("MONGO_URI", "mongodb://localhost:27017"))
	mongo_db: str = field(default_factory=lambda: os.getenv("MONGO_DB_NAME", "bingotrack"))
	mongo_events_collection: str = field(default="events")
	mongo_teams_collection: str = field(default="teams")
	mongo_users_collection: str = field(default="users")
	mongo_tasks_collection: str = field(default="tasks")
	mongo_snapshots_collection: str = field(default="player_snapshots")

	wom_api_base_url: str = field(
		default_factory=lambda: os.getenv("WOM_API_BASE_URL", "https://api.wiseoldman.net/v2")
	)
	# WOM asks API consumers to identify themselves through the User-Agent
	wom_user_agent: str = field(default_factory=lambda: os.getenv("WOM_USER_AGENT", "BingoTrack"))
	wom_api_key: str | None = field(default_factory=lambda: os.getenv("WOM_API_KEY"))
	wom_timeout_seconds: float = field(default_factory=lambda: float(os.getenv("WOM_TIMEOUT_SECONDS", "10")))
	wom_group_id: int | None = field(default_factory=lambda: _env_int("WOM_GROUP_ID"))
	wom_group_verification_code: str | None = field(
		default_factory=lambda: os.getenv("WOM_GROUP_VERIFICATION_CODE")
	)

	player_delay_seconds: float = field(default_factory=lambda: float(os.getenv("PLAYER_DELAY_SECONDS", "5.5")))
	retry_delay_seconds: float = field(default_factory=lambda: float(os.getenv("RETRY_DELAY_SECONDS", "10")))
	max_retries: int = field(default_factory=lambda: int(os.getenv("MAX_RETRIES", "2")))

	reconcile_interval_seconds: int = field(
		default_factory=lambda: int(os.getenv("RECONCILE_INTERVAL_SECONDS", "60"))
	)
	scheduler_timezone: str = field(default_factory=lambda: os.getenv("SCHEDULER_TIMEZONE", "UTC"))
	auto_check_xp_tasks: bool = field(default_factory=lambda: _env_bool("AUTO_CHECK_XP_TASKS", True))

	use_mock_db: bool = field(default_factory=lambda: _env_bool("USE_MOCK_DB"))

	log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
	log_directory: Path = field(default_factory=lambda: Path(os.getenv("LOG_DIR", "data/logs")))

	def ensure_directories(self) -> None:
		"""Create directories required for runtime assets."""

		self.log_directory.mkdir(parents=True, exist_ok=True)


settings = Settings()
settings.ensure_directories()
