"""Provide global constants for the project."""
from pathlib import Path
from dotenv import dotenv_values
import logging

PROJECT_ROOT = Path(__file__).resolve().parents[2]
PACKAGE_ROOT = Path(__file__).resolve().parent

DB_FILE = Path("vibe_crm.db")

DATA_DIR = Path("data")
DB_DIR = Path("db")
LOGS_DIR = Path("logs")

DATA_PATH = (PROJECT_ROOT / DATA_DIR).resolve()
DB_PATH = (DATA_PATH / DB_DIR).resolve()
LOGS_PATH = (DATA_PATH / LOGS_DIR).resolve()
MIGRATIONS_PATH = (PACKAGE_ROOT / "db" / "migrations").resolve()

# Ensure folders are created if not existing
DATA_PATH.mkdir(exist_ok=True)
DB_PATH.mkdir(exist_ok=True)
LOGS_PATH.mkdir(exist_ok=True)

DB_FILE_PATH = (DATA_PATH / DB_DIR / DB_FILE).resolve()

DOTENV_FILE = Path(".env")
DOTENV_FILE_PATH = (PROJECT_ROOT / DOTENV_FILE).resolve()

_ENV = dotenv_values(DOTENV_FILE_PATH)

OPENAI_API_KEY = _ENV.get("OPENAI_API_KEY", None)
LLM_MODEL = _ENV.get("LLM_MODEL", "gpt-4.1-mini")
LLM_TIMEOUT = float(_ENV.get("LLM_TIMEOUT", "60"))
LLM_MAX_RETRIES = int(_ENV.get("LLM_MAX_RETRIES", "3"))

# Postgres DSN of the database that holds the generated CRM tables
TENANT_DATABASE_URL = _ENV.get("TENANT_DATABASE_URL", None)
TENANT_POOL_MIN = int(_ENV.get("TENANT_POOL_MIN", "1"))
TENANT_POOL_MAX = int(_ENV.get("TENANT_POOL_MAX", "5"))

LOG_LEVEL = _ENV.get("LOG_LEVEL", "INFO").upper()

LOG_FILE = Path("application.log")
LOG_FILE_PATH = (LOGS_PATH / LOG_FILE).resolve()

# Free tier: AI generations per identity per UTC day
DAILY_REQUEST_LIMIT = int(_ENV.get("DAILY_REQUEST_LIMIT", "10"))

LOCK_TTL_MINUTES = 5
LOCK_TTL_MIN = 1
LOCK_TTL_MAX = 10

PROMPT_MIN_LEN = 10
PROMPT_MAX_LEN = 1000

MAX_TABLES = 15
MAX_COLUMNS = 50
MAX_IDENTIFIER_LEN = 63

AUDIT_COLUMNS = ("user_id", "created_at", "updated_at")

# Tables outside a generated schema that foreign keys may point at
EXTERNAL_TABLES = frozenset({"auth.users"})

# Row-isolation predicate: TENANT_COLUMN = TENANT_ID_EXPR, granted to TENANT_ROLE
TENANT_COLUMN = "user_id"
TENANT_ID_EXPR = _ENV.get("TENANT_ID_EXPR", "auth.uid()")
TENANT_ROLE = _ENV.get("TENANT_ROLE", "authenticated")

TRACE_REJECTED_ATTEMPTS = _ENV.get("TRACE_REJECTED_ATTEMPTS", "false").lower() in {"1", "true", "yes"}

PROMPT_VALUE_CAP = 20_000
PROMPT_TOTAL_CAP = 60_000


def configure_logging():
    root = logging.getLogger()
    if root.handlers:
        return

    from logging.handlers import RotatingFileHandler

    # console/basic config
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    # file handler
    file_handler = RotatingFileHandler(
        LOG_FILE_PATH,
        maxBytes=5 * 1024 * 1024,  # 5 MB per file
        backupCount=3,
        encoding="utf-8",
    )
    file_handler.setLevel(LOG_LEVEL)
    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    )
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)


def main():
    """Print global constants."""
    files_and_paths = {"PROJECT_ROOT": PROJECT_ROOT,
                       "DATA_PATH": DATA_PATH,
                       "DB_FILE_PATH": DB_FILE_PATH,
                       "MIGRATIONS_PATH": MIGRATIONS_PATH,
                       "LOG_FILE_PATH": LOG_FILE_PATH,
                       }

    print("Current file and path resolutions:")
    print("----------------------------------")
    for label, file_path in files_and_paths.items():
        print(f"{label}: {file_path}")

    print("\nRuntime settings:")
    print("-----------------")
    print(f"LLM_MODEL: {LLM_MODEL}")
    print(f"DAILY_REQUEST_LIMIT: {DAILY_REQUEST_LIMIT}")
    print(f"TENANT_DATABASE_URL set: {bool(TENANT_DATABASE_URL)}")
    print(f"OPENAI_API_KEY set: {bool(OPENAI_API_KEY)}")


if __name__ == "__main__":
    main()
