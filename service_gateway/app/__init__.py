"""Request gateway service package.

Layout:
- ``api``: REST endpoints for jobs, uploads, assets, ledger and models.
- ``main``: FastAPI application, middleware and optional embedded worker pool.
"""
