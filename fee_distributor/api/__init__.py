"""API Layer — FastAPI routes and error handlers.

Invariants:
    - Routes registered explicitly in main.py (no auto-discovery)
    - All endpoints return structured JSON responses

Design Decisions:
    - Read-mostly surface: the only write is the manual pass trigger, which
      goes through the same single-flight driver as the periodic trigger
"""
