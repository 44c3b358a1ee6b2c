"""prepg3_shared.aws_clients — Lazy-singleton AWS service clients.

Clients are created on first call and cached for the life of the Lambda
container. Storage clients retry transient failures inside botocore
(``STORAGE_RETRY_MODE``, up to ``STORAGE_MAX_ATTEMPTS`` retries) and carry
connect and read timeouts so no call outlives the invocation.
"""

from __future__ import annotations

from typing import Optional

import boto3
from botocore.config import Config

from . import config

# ---------------------------------------------------------------------------
# Client singletons
# ---------------------------------------------------------------------------

_ddb = None
_s3 = None
_cloudwatch = None
_sns = None


def _storage_config() -> Config:
    return Config(
        connect_timeout=config.STORAGE_CONNECT_TIMEOUT_SECONDS,
        read_timeout=config.STORAGE_READ_TIMEOUT_SECONDS,
        retries={"max_attempts": config.STORAGE_MAX_ATTEMPTS, "mode": config.STORAGE_RETRY_MODE},
    )


def _get_ddb(region: Optional[str] = None):
    """Get (or create) the DynamoDB client singleton."""
    global _ddb
    if _ddb is None:
        _ddb = boto3.client(
            "dynamodb",
            region_name=region or config.DYNAMODB_REGION,
            config=_storage_config(),
        )
    return _ddb


def _get_s3(region: Optional[str] = None):
    """Get (or create) the S3 client singleton."""
    global _s3
    if _s3 is None:
        _s3 = boto3.client(
            "s3",
            region_name=region or config.S3_REGION,
            config=_storage_config(),
        )
    return _s3


def _get_cloudwatch(region: Optional[str] = None):
    """Get (or create) the CloudWatch client singleton."""
    global _cloudwatch
    if _cloudwatch is None:
        _cloudwatch = boto3.client(
            "cloudwatch",
            region_name=region or config.DYNAMODB_REGION,
            config=Config(retries={"max_attempts": 2, "mode": "standard"}),
        )
    return _cloudwatch


def _get_sns(region: Optional[str] = None):
    """Get (or create) the SNS client singleton."""
    global _sns
    if _sns is None:
        _sns = boto3.client(
            "sns",
            region_name=region or config.DYNAMODB_REGION,
            config=Config(retries={"max_attempts": 3, "mode": "standard"}),
        )
    return _sns
