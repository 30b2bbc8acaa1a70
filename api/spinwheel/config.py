import os
from pathlib import Path
from pydantic import BaseModel
from dotenv import load_dotenv

ENV_PATH = Path(__file__).resolve().parents[1] / ".env"
if ENV_PATH.exists():
    # values already in the process env (deploy config, tests) win over .env
    load_dotenv(ENV_PATH, override=False)
    # BOM-safe fallback: if key was \ufeffDATABASE_URL
    if not os.getenv("DATABASE_URL"):
        for line in ENV_PATH.read_text(encoding="utf-8").splitlines():
            line = line.lstrip("\ufeff")
            if line.startswith("DATABASE_URL="):
                os.environ["DATABASE_URL"] = line.split("=", 1)[1].strip()
                break

class Settings(BaseModel):
    database_url: str = os.getenv("DATABASE_URL") or "sqlite:///./spinwheel.db"
    jwt_secret: str = os.getenv("JWT_SECRET", "dev_change_me")
    allowed_origins: list[str] = [
        o.strip() for o in os.getenv("ALLOWED_ORIGINS", "").split(",") if o.strip()
    ]
    allowed_origin_regex: str | None = os.getenv("ALLOWED_ORIGIN_REGEX") or None
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()

    admin_password: str = os.getenv("ADMIN_PASSWORD", "")
    admin_token_hours: int = int(os.getenv("ADMIN_TOKEN_HOURS", "24"))
    admin_password_hash: str = os.getenv("ADMIN_PASSWORD_HASH", "")  # bcrypt hash

    # guest logins for the wheel page
    user_token_hours: int = int(os.getenv("USER_TOKEN_HOURS", "24"))
    history_limit: int = int(os.getenv("HISTORY_LIMIT", "100"))

settings = Settings()
