"""
Asynchronous Export Job Engine

Accepts export requests, runs them on Celery workers with progress tracking,
and supports retry, cancellation, and scheduled cleanup of expired artifacts.
"""

__version__ = "1.0.0"
