"""
storage-jobs: background job dispatching for object storage maintenance.

Tasks are registered on `storage_jobs.jobs.registry.registry` and run by the
dispatcher in `storage_jobs.jobs.dispatcher`; storage access goes through the
`StorageDisk` backends in `storage_jobs.adapters.storage`.
"""
__version__ = "0.1.0"
