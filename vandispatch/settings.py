"""Runtime configuration read from environment variables.

Database connection parameters mirror the inventory service conventions
(``DB_HOST``, ``DB_PORT`` ...). ``DATABASE_URL`` overrides them when set.
"""

import os

DB_HOST = os.getenv("DB_HOST", "dispatch-db")
DB_PORT = os.getenv("DB_PORT", "5432")
DB_NAME = os.getenv("DB_NAME", "dispatch")
DB_USER = os.getenv("DB_USER", "dispatch_user")
DB_PASSWORD = os.getenv("DB_PASSWORD", "dispatch-pass")

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"postgresql+psycopg://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}",
)

# "sql" uses SqlDispatchStore, "memory" the in-process store
DISPATCH_STORE = os.getenv("DISPATCH_STORE", "sql")

# seconds to wait for an agent's lock before failing with DISPATCH_BUSY
DISPATCH_LOCK_TIMEOUT = float(os.getenv("DISPATCH_LOCK_TIMEOUT", "5"))

# seconds to wait for the database to accept connections at startup
DB_STARTUP_TIMEOUT = float(os.getenv("DB_STARTUP_TIMEOUT", "30"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
