"""
Decides which backup configurations should run in the current cycle.

A scheduled configuration is due when its cron expression fired within the
last DUE_WINDOW (five minutes). Nothing is remembered between cycles, so a
poll interval longer than the window can miss a fire time, and two polls
inside one window run the backup twice.
"""

import logging
from collections import namedtuple
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional, Tuple

from apscheduler.triggers.cron import CronTrigger

from agent.models import BackupConfiguration


logger = logging.getLogger(__name__)

DUE_WINDOW = timedelta(minutes=5)

DueCheck = namedtuple('DueCheck', ['due', 'reason'])


def _aware(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now


def is_due(
    config: BackupConfiguration,
    now: Optional[datetime] = None,
    force: bool = False,
    window: timedelta = DUE_WINDOW
) -> DueCheck:
    """
    Check whether a configuration should run now.

    Args:
        config: Backup configuration
        now: Evaluation time (default: current UTC time)
        force: Run regardless of schedule (manual trigger)
        window: How far back a fire time still counts as due

    Returns:
        DueCheck(due, reason); never raises
    """
    if force:
        return DueCheck(True, 'Manual backup requested')

    if config.schedule is None:
        return DueCheck(False, 'Manual-only backup (no schedule)')

    expression = config.schedule.cron_expression
    now = _aware(now)

    try:
        trigger = CronTrigger.from_crontab(expression, timezone=config.schedule.timezone)
        fired = trigger.get_next_fire_time(None, now - window)
        if fired is not None and fired <= now:
            return DueCheck(True, f"Scheduled backup is due (cron: {expression})")

        next_run = trigger.get_next_fire_time(None, now)
    except Exception as e:
        return DueCheck(False, f"Invalid cron expression: {e}")

    if next_run is None:
        return DueCheck(False, 'Not due yet. No upcoming run')
    return DueCheck(False, f"Not due yet. Next run at {next_run.isoformat()}")


def filter_due_configs(
    configs: Iterable[BackupConfiguration],
    now: Optional[datetime] = None,
    force_ids: Iterable[str] = (),
    window: timedelta = DUE_WINDOW
) -> List[Tuple[BackupConfiguration, str]]:
    """
    Select the configurations to run in this cycle.

    Configurations whose id is in force_ids, or that carry a pending manual
    request (requested_at), run regardless of their schedule.

    Returns:
        List of (config, reason) pairs in input order
    """
    now = _aware(now)
    force_ids = set(force_ids)
    due = []

    for config in configs:
        force = config.id in force_ids or bool(config.requested_at)
        check = is_due(config, now=now, force=force, window=window)
        if check.due:
            due.append((config, check.reason))
        else:
            logger.debug(f"Skipped \"{config.name}\": {check.reason}")

    return due
