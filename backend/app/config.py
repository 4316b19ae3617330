import os
from pathlib import Path
from dotenv import load_dotenv

# Override=True so changes in backend/.env take effect on process reload (and not get
# stuck on old environment variables).
#
# For automated tests (SQLite), we need to prevent backend/.env from overriding the
# test DATABASE_URL. Set DISABLE_DOTENV=1 to skip loading .env.
if os.getenv("DISABLE_DOTENV") != "1":
    load_dotenv(override=True)


def _env_flag(name: str, default: str) -> bool:
    return (os.getenv(name, default) or default).strip() in {"1", "true", "True", "yes", "YES"}


_raw_database_url = (os.getenv("DATABASE_URL") or "").strip()
# Default to a local SQLite DB for dev so the backend can start out-of-the-box.
# Use an absolute path so it works regardless of current working directory.
_default_sqlite_path = (Path(__file__).resolve().parent.parent / "dev.db").as_posix()
DATABASE_URL = _raw_database_url or f"sqlite:///{_default_sqlite_path}"

# Auth / JWT
# Tokens are issued by the identity provider; we only verify them.
# NOTE: keep a default for local dev so the server can boot even if SECRET_KEY isn't set.
SECRET_KEY = os.getenv("SECRET_KEY", "dev_secret_change_me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", str(60 * 24 * 7)) or "10080")

# -------------------- Admission store --------------------
# "sql": offerings/profiles/applications live in DATABASE_URL (default).
# "strapi": proxy to an external Strapi content backend over REST.
ADMISSION_STORE = (os.getenv("ADMISSION_STORE", "sql") or "sql").strip().lower()
STRAPI_URL = (os.getenv("STRAPI_URL") or "").strip().rstrip("/")
STRAPI_API_TOKEN = os.getenv("STRAPI_API_TOKEN")
STORE_TIMEOUT_S = float(os.getenv("STORE_TIMEOUT_S", "10") or "10")

# When the seat count can't be read for a listing, report used=0 (flagged as
# approximate) instead of failing the page. Submissions always fail closed.
CAPACITY_FAIL_OPEN = _env_flag("CAPACITY_FAIL_OPEN", "1")

# Max wait for another submission on the same offering to finish.
SUBMISSION_LOCK_TIMEOUT_S = float(os.getenv("SUBMISSION_LOCK_TIMEOUT_S", "30") or "30")

# CORS
FRONTEND_ORIGINS = [o.strip() for o in os.getenv("FRONTEND_ORIGINS", "").split(",") if o.strip()]
