"""
Adapter layer for storage-jobs.

Contains abstraction adapters for storage (local/S3) and job queues (local/SQS).
Provides mode-aware implementations that work across deployment environments.
"""
