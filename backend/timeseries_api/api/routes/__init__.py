"""Route Modules: built-in routes that every ApiServer carries.

Invariants:
    - Each module defines its own APIRouter using AppRoute
"""
