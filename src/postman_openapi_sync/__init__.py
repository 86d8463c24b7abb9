"""
Postman OpenAPI Sync - keeps a Postman collection and its OpenAPI description in step

This package provides a FastAPI-based web service that owns two documents on
disk: a hand-edited Postman collection (the source document) and the OpenAPI
description generated from it (the derived document). It enables:

- Reading, saving and uploading the Postman collection
- Crash-resistant conversion of the collection into OpenAPI JSON
- Timestamped snapshots of both documents before every overwrite
- Listing and restoring snapshots, with rollback when a conversion fails
- Automatic re-conversion when the collection changes on disk

Key Components:
    - main: FastAPI application and HTTP endpoint definitions
    - sync_manager: Service facade wiring store, backups, pipeline and watcher
    - pipeline: Lock / backup / transform / normalize / validate / commit cycle
    - backup_manager: Snapshot creation, listing and restore
    - document_store: Filesystem persistence for the two documents
    - locking: Cross-process coordination lock built on filelock
    - watcher: watchdog observer plus single-slot debouncer
    - transform: Postman v2.x to OpenAPI 3.0 conversion
    - configuration: Layered OmegaConf configuration validated by pydantic
    - models: Pydantic models for request/response payloads

Usage:
    Run the API server with:
        uvicorn postman_openapi_sync.main:app --host 0.0.0.0 --port 3001

    Or use the development script:
        uv run uvicorn postman_openapi_sync.main:app --reload

Architecture Principles:
    - The derived document is only ever replaced atomically
    - All commits to the derived document serialize on a file lock
    - Every destructive overwrite is preceded by a snapshot
    - The conversion itself is a swappable black box
"""

__version__ = "0.1.0"
