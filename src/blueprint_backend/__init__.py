"""
Blueprint Backend - asynchronous blueprint ingestion service

This package provides a FastAPI-based web service that turns uploaded
construction-plan PDFs ("blueprints") into per-page images. It enables:

- PDF uploads with MIME type and structure validation
- Asynchronous, page-by-page conversion with persisted progress
- Real-time progress and completion notifications over WebSocket rooms
- Referential integrity between blueprints and the tasks located on them
- Guaranteed removal of a deleted blueprint's stored objects

Key Components:
    - main: FastAPI application factory and HTTP/WebSocket endpoints
    - conversion: Conversion jobs and the worker pool running them
    - blueprints: Blueprint record access layer
    - notifications: Room-scoped notification bus and durable notifications
    - integrity: Delete guard and blob cleanup
    - object_store: S3 and local object storage
    - configuration: Config loading and merging logic

Usage:
    Run the API server with:
        uvicorn blueprint_backend.main:create_app --factory --reload --host 0.0.0.0 --port 8000
"""
