"""Music Ingest Pipeline - Core application modules.

Provides:
- JSON schemas in /specs (versioned contracts)
- SQLite models, persistence primitives and the durable job queue
- Job producer, virus scanner, temp file store, object storage adapter
- Huey maintenance tasks (lease reclaim, link reconciliation)
"""

__version__ = "0.1.0"
