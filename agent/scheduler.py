"""
APScheduler configuration for the agent daemon.

Manages:
- The periodic backup cycle (every POLL_INTERVAL seconds)
- Pending size assessment requests (after each cycle)
- Graceful shutdown on SIGINT/SIGTERM
"""

import signal
import logging
import threading
from datetime import datetime, timezone
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.executors.pool import ThreadPoolExecutor


logger = logging.getLogger(__name__)

# Global scheduler instance and agent reference
scheduler = None
backup_agent = None


def init_scheduler(agent, poll_interval: int):
    """
    Initialize and configure APScheduler.

    Args:
        agent: Initialized Agent instance
        poll_interval: Seconds between backup cycles
    """
    global scheduler, backup_agent

    if scheduler is not None:
        return scheduler

    backup_agent = agent

    # One worker: configurations are processed strictly one at a time
    executors = {
        'default': ThreadPoolExecutor(max_workers=1)
    }

    job_defaults = {
        'coalesce': True,  # Combine missed cycles into one
        'max_instances': 1,  # Never overlap cycles
        'misfire_grace_time': poll_interval
    }

    scheduler = BackgroundScheduler(
        executors=executors,
        job_defaults=job_defaults,
        timezone='UTC'
    )

    scheduler.add_job(
        func=_run_cycle_wrapper,
        trigger=IntervalTrigger(seconds=poll_interval),
        id='backup_cycle',
        name='Backup Cycle',
        next_run_time=datetime.now(timezone.utc),
        replace_existing=True
    )

    return scheduler


def start_scheduler():
    """Start the APScheduler."""
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if not scheduler.running:
        scheduler.start()
        logger.info(f"Scheduler started (state={scheduler.state})")
    else:
        logger.info(f"Scheduler already running (state={scheduler.state})")


def stop_scheduler(wait: bool = True):
    """
    Stop the APScheduler.

    Args:
        wait: Let the running cycle finish first
    """
    global scheduler, backup_agent

    if scheduler and scheduler.running:
        scheduler.shutdown(wait=wait)
        logger.info('Scheduler stopped')

    scheduler = None
    backup_agent = None


def _run_cycle_wrapper():
    """
    Run one backup cycle in scheduler context.

    Errors are logged and swallowed so the next cycle still runs.
    """
    try:
        logger.info('Starting backup cycle...')
        backup_agent.run_cycle()
        logger.info('Backup cycle completed')
    except Exception as e:
        logger.error(f"Backup cycle error: {e}")

    try:
        backup_agent.process_size_requests()
    except Exception as e:
        logger.error(f"Size assessment error: {e}")

    job = scheduler.get_job('backup_cycle') if scheduler else None
    if job and job.next_run_time:
        logger.info(f"Next backup cycle at {job.next_run_time.isoformat()}")


def run_daemon(agent, poll_interval: int, stop_event: Optional[threading.Event] = None) -> int:
    """
    Run the agent until SIGINT or SIGTERM.

    The in-flight configuration is allowed to finish before the connection
    is closed.

    Args:
        agent: Agent instance (not yet initialized)
        poll_interval: Seconds between backup cycles
        stop_event: Event that ends the daemon (default: set by signal handlers)

    Returns:
        Process exit status
    """
    stop_event = stop_event or threading.Event()

    def handle_signal(signum, frame):
        logger.info(f"Received {signal.Signals(signum).name} signal")
        stop_event.set()

    if threading.current_thread() is threading.main_thread():
        signal.signal(signal.SIGINT, handle_signal)
        signal.signal(signal.SIGTERM, handle_signal)

    logger.info('Daemon starting...')

    if not agent.initialize():
        logger.error('Failed to initialize agent')
        return 1

    logger.info('Agent initialized successfully')
    logger.info(f"Polling interval: {poll_interval / 60:g} minutes")

    init_scheduler(agent, poll_interval)
    start_scheduler()

    stop_event.wait()

    logger.info('Shutdown signal received, stopping daemon...')
    stop_scheduler(wait=True)
    agent.cleanup()
    logger.info('Daemon shutdown complete')
    return 0
