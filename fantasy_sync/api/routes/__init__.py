"""
API routes.

- sync: task queue status, manual triggers, scheduler jobs
"""
