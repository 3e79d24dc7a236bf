"""
Scheduled payment jobs
Hourly capture of upcoming consultations, release of cancelled holds every 6 hours
"""

import logging

from .config import PAYMENT_JOB_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

RELEASE_HOURS = {0, 6, 12, 18}


class SchedulingUnavailable(Exception):
    """Raised when the cron facility cannot be loaded"""

    pass


def _load_cron():
    try:
        from arq.cron import cron
    except ImportError as e:
        raise SchedulingUnavailable(f"arq cron could not be loaded: {e}") from e
    return cron


def build_cron_jobs(capture_task, expiry_task) -> list:
    """
    Register the payment capture and pre-authorization release jobs.
    Returns no jobs when scheduling is unavailable so the worker still
    serves on-demand tasks.
    """
    try:
        cron = _load_cron()
    except SchedulingUnavailable as e:
        logger.warning(f"⚠️ Scheduled payment jobs disabled: {e}")
        return []

    jobs = [
        cron(
            capture_task,
            name="process_appointment_payments",
            minute=0,  # every hour on the hour
            unique=True,
            max_tries=1,  # the next tick is the retry
            timeout=PAYMENT_JOB_TIMEOUT_SECONDS,
        ),
        cron(
            expiry_task,
            name="cancel_expired_preauthorizations",
            hour=RELEASE_HOURS,
            minute=0,
            unique=True,
            max_tries=1,
            timeout=PAYMENT_JOB_TIMEOUT_SECONDS,
        ),
    ]
    logger.info("🕐 Scheduled jobs configured: capture hourly, release every 6 hours")
    return jobs
