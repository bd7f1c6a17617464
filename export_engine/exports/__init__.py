"""
Async Export Module

Export job lifecycle: request, background processing with progress tracking,
retry, cancellation, and cleanup of expired artifacts.
Uses Celery for background processing and batched streaming for memory efficiency.
"""
