import logging
import os
from pathlib import Path

# SQLite file location (authorization store + audit log share one database)
DATA_DIR = Path(os.getenv("EHR_DATA_DIR", "./data"))
DATA_DIR.mkdir(parents=True, exist_ok=True)
DB_PATH = DATA_DIR / "ledger.db"
DB_URL = os.getenv("EHR_DB_URL", f"sqlite:///{DB_PATH.resolve()}")

# Bearer tokens for the HTTP surface
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALG = "HS256"
ACCESS_TOKEN_TTL_MIN = int(os.getenv("ACCESS_TOKEN_TTL_MIN", "120"))

# Audit append retry (record writes are never rolled back for the log)
AUDIT_APPEND_ATTEMPTS = int(os.getenv("AUDIT_APPEND_ATTEMPTS", "3"))
AUDIT_RETRY_BACKOFF_SEC = float(os.getenv("AUDIT_RETRY_BACKOFF_SEC", "0.05"))
STRICT_AUDIT = os.getenv("STRICT_AUDIT", "false").lower() == "true"

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = LOG_LEVEL):
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
