"""
CL4PDF Backend - REST API for SnackPDF and RevisePDF PDF tools

This package provides a FastAPI-based web service that runs simple PDF
operations for the SnackPDF and RevisePDF front-ends. It enables:

- Merging several uploaded PDFs into one document
- Splitting a PDF per page, by page ranges or by interval
- Usage quotas for free users and daily limits for guests
- A job ledger recording every processing attempt and its outcome
- Storage of produced files in S3 or a local output directory

Key Components:
    - main: FastAPI application and HTTP endpoint definitions
    - job_manager: Request orchestration (gate, ledger, transform, store)
    - usage_gate: Admission control for users and guests
    - ledger: Job record lifecycle on top of the SQLite job table
    - pdf_engine: Merge and split on in-memory documents (pypdf)
    - artifact_store: S3 and local storage backends
    - accounts: Users, sessions and usage counters
    - audit: Activity log, also used to meter guests
    - configuration: Config loading from defaults, .env and environment

Usage:
    Run the API server with:
        uvicorn cl4pdf_backend.main:app --reload --host 0.0.0.0 --port 8000
"""
