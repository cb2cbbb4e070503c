"""Infrastructure Layer: database pool and logging.

Invariants:
    - Infrastructure never imports from api/
    - All driver failures mapped to core/errors.py types
"""
