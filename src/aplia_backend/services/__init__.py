"""
aplia_backend.services

Service-layer package.

Responsibilities:
- Own transaction boundaries (`commit()`); repositories only flush.
- Orchestrate calls across the DB and the upstream clients (gateway, billing, automation).
"""

# Package marker.
