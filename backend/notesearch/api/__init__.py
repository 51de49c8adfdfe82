"""Work-note search REST API package.

Sub-modules expose FastAPI routers:
- search: hybrid full-text + semantic search
- admin: embedding retry queue triage
"""
