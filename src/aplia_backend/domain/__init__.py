"""
aplia_backend.domain

Pure domain helpers (no I/O).

Responsibilities:
- Phone number normalization/formatting.
- Plan limit arithmetic.
"""

# Package marker.
