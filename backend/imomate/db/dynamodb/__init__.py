"""DynamoDB access for the CRM single table.

This package centralizes:
- boto3 client/resource configuration
- retry/backoff for transient storage failures
- encrypted, tenant-bound cursor tokens
- Decimal <-> float conversion at the item boundary
- transactional helpers
"""
