import os

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./labflow.db")
SQL_ECHO = os.getenv("LABFLOW_SQL_ECHO", "false").lower() in ("1", "true", "yes")

# every transaction gives up after this long and surfaces as OperationFailed
TX_TIMEOUT_SECONDS = float(os.getenv("LABFLOW_TX_TIMEOUT_SECONDS", "10"))

LOG_LEVEL = os.getenv("LABFLOW_LOG_LEVEL", "INFO")

# push transport is disabled when no webhook is configured
PUSH_WEBHOOK_URL = os.getenv("LABFLOW_PUSH_WEBHOOK_URL", "")
PUSH_TIMEOUT_SECONDS = float(os.getenv("LABFLOW_PUSH_TIMEOUT_SECONDS", "5"))

QC_SERVICE_URL = os.getenv("LABFLOW_QC_URL", "http://qc:8080")
QC_TIMEOUT_SECONDS = float(os.getenv("LABFLOW_QC_TIMEOUT_SECONDS", "5"))

APP_URL = os.getenv("LABFLOW_APP_URL", "http://localhost:3000")

CORS_ORIGINS = [
    o.strip()
    for o in os.getenv("LABFLOW_CORS_ORIGINS", "http://localhost:3000,http://localhost:80").split(",")
    if o.strip()
]

RETRY_MAX_ATTEMPTS = int(os.getenv("LABFLOW_RETRY_MAX_ATTEMPTS", "3"))
RETRY_BASE_DELAY = float(os.getenv("LABFLOW_RETRY_BASE_DELAY", "1.0"))
RETRY_MULTIPLIER = float(os.getenv("LABFLOW_RETRY_MULTIPLIER", "2.0"))
RETRY_MAX_DELAY = float(os.getenv("LABFLOW_RETRY_MAX_DELAY", "10.0"))

DISPUTE_REASON_MIN_LENGTH = 20
