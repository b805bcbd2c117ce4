import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

from ielts_core.models import Module


def _int(name, default):
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


@dataclass
class Settings:
    db_host: str = "localhost"
    db_user: str = "root"
    db_password: str = ""
    db_name: str = "ielts_platform"
    db_pool_size: int = 5
    storage_backend: str = "memory"
    openai_api_key: str | None = None
    openai_model: str = "gpt-4o-mini"
    free_limits: dict = field(default_factory=lambda: {
        Module.LISTENING: 5,
        Module.READING: 1,
        Module.WRITING: 5,
    })
    cooldown_hours: int = 24
    sweep_interval_seconds: int = 300
    log_level: str = "INFO"

    @property
    def db_config(self):
        return {
            'host': self.db_host,
            'user': self.db_user,
            'password': self.db_password,
            'database': self.db_name,
            'pool_name': 'ielts_pool',
            'pool_size': self.db_pool_size,
        }


def load_settings():
    """Read settings from the environment (and a .env file, when present)."""
    load_dotenv()
    return Settings(
        db_host=os.getenv('DB_HOST', 'localhost'),
        db_user=os.getenv('DB_USER', 'root'),
        db_password=os.getenv('DB_PASSWORD', ''),
        db_name=os.getenv('DB_NAME', 'ielts_platform'),
        db_pool_size=_int('DB_POOL_SIZE', 5),
        storage_backend=os.getenv('STORAGE_BACKEND', 'memory').lower(),
        openai_api_key=os.getenv('OPENAI_API_KEY') or None,
        openai_model=os.getenv('OPENAI_MODEL', 'gpt-4o-mini'),
        free_limits={
            Module.LISTENING: _int('FREE_LISTENING_LIMIT', 5),
            Module.READING: _int('FREE_READING_LIMIT', 1),
            Module.WRITING: _int('FREE_WRITING_LIMIT', 5),
        },
        cooldown_hours=_int('COOLDOWN_HOURS', 24),
        sweep_interval_seconds=_int('SWEEP_INTERVAL_SECONDS', 300),
        log_level=os.getenv('LOG_LEVEL', 'INFO').upper(),
    )
