"""
Template Gateway - REST API for publishing Word templates to ShareDo

This package provides a FastAPI-based web service that takes bundles of
legacy Word templates through to published ShareDo document templates. It
enables:

- ZIP bundle uploads with a CSV manifest describing each template
- A persistent registry of templates and upload batches
- Conversion of .dot/.doc files to DOCX through an external converter
- Deployment of converted documents to the ShareDo template repository

Key Components:
    - main: FastAPI application and HTTP endpoint definitions
    - workflow: Ingest, convert and deploy coordinator
    - archive / manifest: Bundle unpacking and manifest parsing
    - database: SQLite registry store
    - s3_service: Blob storage for originals and conversions
    - converter: Client for the document conversion service
    - platform_client: Authenticated ShareDo API client
    - docx_patcher: Custom document property embedding
    - configuration: Config loading and merging logic

Usage:
    Run the API server with:
        uvicorn template_gateway.main:app --reload --host 0.0.0.0 --port 8000
"""
