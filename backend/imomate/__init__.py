"""Multi-tenant real-estate CRM core on DynamoDB."""

__version__ = "0.1.0"
