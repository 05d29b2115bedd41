"""
This module contains the configuration settings for the LMDesk supervisor.
It defines binary and data paths, port allocation, readiness detection and
shutdown settings for the PostgreSQL + listmonk process pair.
It is used throughout the application to ensure consistent settings and paths.
"""

import os
import pathlib
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv(override=True)


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ('true', '1', 't')


#* --- Core Paths ---
BASE_DIR = pathlib.Path(__file__).resolve().parent.parent  # Project Root
BIN_DIR = pathlib.Path(os.getenv("LMDESK_BIN_DIR", BASE_DIR / "bin"))
USER_DATA_DIR = pathlib.Path(os.getenv("LMDESK_USER_DATA_DIR", pathlib.Path.home() / ".lmdesk"))

#* --- Persisted State ---
DATA_DIR = USER_DATA_DIR / "listmonk-db"
LOGS_DIR = USER_DATA_DIR / "logs"
OVERRIDES_JSON_PATH = USER_DATA_DIR / "overrides.json"
INIT_MARKER_NAME = "initialized.txt"
LOCK_ARTIFACT_NAME = "postmaster.pid"
POSTGRES_LOG_FILE = "postgres.log"
LISTMONK_LOG_FILE = "listmonk.log"

#* --- External Executable Paths ---
PG_BIN_DIR = pathlib.Path(os.getenv("LMDESK_PG_BIN_DIR", BIN_DIR / "pg-dist" / "bin"))
POSTGRES_PATH = PG_BIN_DIR / "postgres"
INITDB_PATH = PG_BIN_DIR / "initdb"
LISTMONK_PATH = pathlib.Path(os.getenv("LMDESK_LISTMONK_PATH", BIN_DIR / "listmonk"))
LISTMONK_CONFIG_PATH = pathlib.Path(os.getenv("LMDESK_LISTMONK_CONFIG", BIN_DIR / "config.toml"))

#* --- Database Settings ---
DB_HOST = "127.0.0.1"
DB_NAME = "postgres"
DB_USER = "postgres"
DB_PASSWORD = ""  # trust auth on loopback only
PG_START_PORT = int(os.getenv("LMDESK_PG_START_PORT", "54321"))
PG_PORT_MAX_ATTEMPTS = 20

#* --- Application Server Settings ---
LISTMONK_ENV_PREFIX = "LISTMONK_"
APP_HOST = "127.0.0.1"
APP_BIND_ADDRESS = f"{APP_HOST}:0"  # port 0 asks the OS for an ephemeral port
APP_DEFAULT_PORT = 9000
APP_ADDRESS_FALLBACK_ENABLED = _env_flag("LMDESK_APP_ADDRESS_FALLBACK", "True")

#* --- Readiness Detection ---
DATABASE_READY_PATTERNS = [
    r"database system is ready to accept connections",
]
APPLICATION_READY_PATTERNS = [
    r"http server started on 127\.0\.0\.1:(\d+)",
    r"Web server listening on http://127\.0\.0\.1:(\d+)",
]

#* --- Supervisor Settings ---
PROCESS_TITLE = "LMDesk - Supervisor"
DATABASE_READY_TIMEOUT = 60     # seconds, 0 waits forever
APPLICATION_READY_TIMEOUT = 60  # seconds, 0 waits forever
GRACEFUL_SHUTDOWN_TIMEOUT = 10  # seconds before force-killing

#* --- Application variables ---
VERBOSE_LOGGING = False

#* --- MODIFIABLE SETTINGS (Changeable through overrides.json) ---
MODIFIABLE_SETTINGS = {
    "PG_START_PORT", "PG_PORT_MAX_ATTEMPTS",
    "DATABASE_READY_TIMEOUT", "APPLICATION_READY_TIMEOUT",
    "APP_DEFAULT_PORT", "APP_ADDRESS_FALLBACK_ENABLED",
    "GRACEFUL_SHUTDOWN_TIMEOUT",
    "POSTGRES_PATH", "INITDB_PATH", "LISTMONK_PATH", "LISTMONK_CONFIG_PATH",
}
