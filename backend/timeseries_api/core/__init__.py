"""Core Layer: framework-free building blocks shared by infrastructure and api.

Invariants:
    - core never imports FastAPI, SQLAlchemy or uvicorn
"""
