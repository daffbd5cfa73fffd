"""
Hive - API Package
==================

FastAPI routers for the pipeline.
"""
