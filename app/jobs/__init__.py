"""
Background Jobs Module

Handles scheduled tasks for:
- Expiry of unpaid online orders
"""

from app.jobs.scheduler import scheduler, start_scheduler, shutdown_scheduler, get_job_status
from app.jobs.order_jobs import cancel_expired_online_orders, run_expiry_sweep

__all__ = [
    "scheduler",
    "start_scheduler",
    "shutdown_scheduler",
    "get_job_status",
    "cancel_expired_online_orders",
    "run_expiry_sweep",
]
