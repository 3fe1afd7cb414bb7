"""DynamoDB access layer for the single Peeap table.

- boto3 client/resource configuration (optionally against DynamoDB Local)
- app-level retry/backoff for throttling and transaction conflicts
- encrypted cursor pagination tokens
- float <-> Decimal conversion at the boundary
- typed errors rendered as problem-details by the API
"""
