"""prepg3_shared.config — Environment variables, constants, logging.

Every value is read once at import time; tests override module attributes
directly when they need a different value.
"""

from __future__ import annotations

import logging
import os

__all__ = [
    "APPEND_CONFLICT_ATTEMPTS",
    "COGNITO_CLIENT_ID",
    "COGNITO_USER_POOL_ID",
    "DOCUMENTS_BUCKET",
    "DOCUMENTS_TABLE",
    "DOWNLOAD_URL_TTL_SECONDS",
    "DYNAMODB_REGION",
    "ENVIRONMENT",
    "ID_TOKEN_COOKIE",
    "INVESTORS_TABLE",
    "LOG_LEVEL",
    "METRICS_ENABLED",
    "METRICS_NAMESPACE",
    "MIN_REASON_LENGTH",
    "MAX_REASON_LENGTH",
    "OPERATOR_ALERT_TOPIC_ARN",
    "PROPERTIES_TABLE",
    "RETENTION_YEARS",
    "S3_REGION",
    "STORAGE_CONNECT_TIMEOUT_SECONDS",
    "STORAGE_MAX_ATTEMPTS",
    "STORAGE_READ_TIMEOUT_SECONDS",
    "STORAGE_RETRY_MODE",
    "logger",
]


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() in {"1", "true", "yes"}


# ---------------------------------------------------------------------------
# Tables, buckets, regions
# ---------------------------------------------------------------------------

DOCUMENTS_TABLE = os.environ.get("DOCUMENTS_TABLE", "prepg3-documents")
INVESTORS_TABLE = os.environ.get("INVESTORS_TABLE", "prepg3-investors")
PROPERTIES_TABLE = os.environ.get("PROPERTIES_TABLE", "prepg3-properties")
DOCUMENTS_BUCKET = os.environ.get("DOCUMENTS_BUCKET", "prepg3-documents")
DYNAMODB_REGION = os.environ.get("DYNAMODB_REGION", "eu-west-2")
S3_REGION = os.environ.get("S3_REGION", DYNAMODB_REGION)
ENVIRONMENT = os.environ.get("ENVIRONMENT", "dev")

# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------

COGNITO_USER_POOL_ID = os.environ.get("COGNITO_USER_POOL_ID", "")
COGNITO_CLIENT_ID = os.environ.get("COGNITO_CLIENT_ID", "")
ID_TOKEN_COOKIE = os.environ.get("ID_TOKEN_COOKIE", "prepg3_id_token")

# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

RETENTION_YEARS = int(os.environ.get("RETENTION_YEARS", "7"))
DOWNLOAD_URL_TTL_SECONDS = int(os.environ.get("DOWNLOAD_URL_TTL_SECONDS", "300"))
MIN_REASON_LENGTH = 10
MAX_REASON_LENGTH = 500

# ---------------------------------------------------------------------------
# Storage clients and appends
# ---------------------------------------------------------------------------

STORAGE_MAX_ATTEMPTS = int(os.environ.get("STORAGE_MAX_ATTEMPTS", "4"))
STORAGE_RETRY_MODE = os.environ.get("STORAGE_RETRY_MODE", "standard")
STORAGE_CONNECT_TIMEOUT_SECONDS = float(os.environ.get("STORAGE_CONNECT_TIMEOUT_SECONDS", "2"))
STORAGE_READ_TIMEOUT_SECONDS = float(os.environ.get("STORAGE_READ_TIMEOUT_SECONDS", "5"))
APPEND_CONFLICT_ATTEMPTS = int(os.environ.get("APPEND_CONFLICT_ATTEMPTS", "3"))

# ---------------------------------------------------------------------------
# Metrics / alerting
# ---------------------------------------------------------------------------

METRICS_NAMESPACE = os.environ.get("METRICS_NAMESPACE", "PREPG3/Records")
METRICS_ENABLED = _env_bool("METRICS_ENABLED", "true")
OPERATOR_ALERT_TOPIC_ARN = os.environ.get("OPERATOR_ALERT_TOPIC_ARN", "")

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

LOG_LEVEL = os.environ.get("LOG_LEVEL", "DEBUG" if ENVIRONMENT == "dev" else "INFO").upper()

logger = logging.getLogger("prepg3_shared")
logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
