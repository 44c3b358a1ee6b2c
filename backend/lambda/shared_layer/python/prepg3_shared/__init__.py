"""prepg3_shared — Versioned records core for PREPG3 Lambda functions.

Provides:
    - Cognito claims normalization and role-gated authorization
    - Append-only version chains over DynamoDB with a derived current version
    - Document upload lifecycle with retention-gated permanent purge
    - Change timelines built from version chains
    - DynamoDB / S3 adapters, CloudWatch metrics and operator alerts
"""

__version__ = "1.0.0"
