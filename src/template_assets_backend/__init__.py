"""
Template Assets Backend - import and export of document template bundles

This package provides a FastAPI-based web service for moving document
templates between organisations of the document-generation platform. A
template asset is a zip bundle (manifest, fonts, layout PDF, LaTeX/Typst
frame and a ProseMirror body) that this service can:

- Validate and store as a reusable template asset
- Import atomically into an organisation as theme, flow, frame, layout,
  content type and data template entities
- Export back out of existing entities
- Convert ProseMirror document trees to Markdown

Key Components:
    - main: FastAPI application and HTTP endpoint definitions
    - importer: Import orchestration and the template asset service
    - preparers: Per-section entity creation (fonts, layout, frame, ...)
    - exporter: Entities back to a template asset archive
    - markdown: ProseMirror to Markdown converter
    - archive / validation: Zip reading and manifest checks
    - database / entities: SQLite persistence
    - storage: Local filesystem or S3 object storage
    - job_manager: Background import jobs
    - configuration: Config loading and merging logic

Usage:
    Run the API server with:
        uvicorn template_assets_backend.main:app --reload --host 0.0.0.0 --port 8000
"""
