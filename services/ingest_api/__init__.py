"""Music Ingest Pipeline - Ingest API service.

FastAPI edge that validates music uploads and enqueues them for the worker
pool. No scanning, uploading or persistence happens on the request path.
"""

__all__: list[str] = []
