"""
aplia_backend.db.repositories

Thin data-access classes, one per aggregate. Each wraps an `AsyncSession`,
flushes but never commits.
"""

# Package marker; repositories are imported directly from submodules.
