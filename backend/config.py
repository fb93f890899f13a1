"""Runtime settings, read from the environment (and ``backend/.env`` if present)."""
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _first_env(*names: str) -> Optional[str]:
    for name in names:
        value = (os.environ.get(name) or "").strip()
        if value:
            return value
    return None


@dataclass(frozen=True)
class Settings:
    mongo_url: str = "mongodb://localhost:27017"
    db_name: str = "reminisce_ai"
    cors_origins: Tuple[str, ...] = ("*",)
    session_ttl_days: int = 7
    cookie_secure: bool = False
    openai_api_key: Optional[str] = None
    openai_chat_model: str = "gpt-4o-mini"
    openai_tts_model: str = "tts-1"
    openai_tts_voice: str = "nova"  # Warm, friendly voice good for elderly
    vision_endpoint: Optional[str] = None
    vision_key: Optional[str] = None
    vision_timeout_seconds: float = 10.0
    max_upload_bytes: int = 10 * 1024 * 1024

    @classmethod
    def from_env(cls) -> "Settings":
        vision_endpoint = _first_env("AZURE_COMPUTER_VISION_ENDPOINT", "AZURE_VISION_ENDPOINT")
        return cls(
            mongo_url=os.environ.get("MONGO_URL", cls.mongo_url),
            db_name=os.environ.get("DB_NAME", cls.db_name),
            cors_origins=tuple(
                o.strip() for o in os.environ.get("CORS_ORIGINS", "*").split(",") if o.strip()
            ),
            session_ttl_days=int(os.environ.get("SESSION_TTL_DAYS", cls.session_ttl_days)),
            cookie_secure=_env_flag("COOKIE_SECURE"),
            openai_api_key=_first_env("OPENAI_API_KEY"),
            openai_chat_model=os.environ.get("OPENAI_CHAT_MODEL", cls.openai_chat_model),
            openai_tts_model=os.environ.get("OPENAI_TTS_MODEL", cls.openai_tts_model),
            openai_tts_voice=os.environ.get("OPENAI_TTS_VOICE", cls.openai_tts_voice),
            vision_endpoint=vision_endpoint.rstrip("/") if vision_endpoint else None,
            vision_key=_first_env("AZURE_COMPUTER_VISION_KEY", "AZURE_VISION_KEY"),
            vision_timeout_seconds=float(
                os.environ.get("VISION_TIMEOUT_SECONDS", cls.vision_timeout_seconds)
            ),
            max_upload_bytes=int(os.environ.get("MAX_UPLOAD_BYTES", cls.max_upload_bytes)),
        )
