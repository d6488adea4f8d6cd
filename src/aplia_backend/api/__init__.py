"""
aplia_backend.api

HTTP surface of the Aplia backend.

Responsibilities:
- FastAPI app factory and router modules.
- API-layer dependency wiring and request/response models.
"""

# Package marker.


# --- Module Notes -----------------------------------------------------------
# Routers validate input, resolve the principal and delegate to services.
