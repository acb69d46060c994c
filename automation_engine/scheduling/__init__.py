"""Cron and polling triggers with distributed leader election."""

from automation_engine.scheduling.cron import CronScheduler, CronTimer
from automation_engine.scheduling.polling import PollingTriggers
from automation_engine.scheduling.leader import (
    LeaderElector,
    LeaderLock,
    RedisLeaderLock,
    make_identity,
)

__all__ = [
    "CronScheduler",
    "CronTimer",
    "LeaderElector",
    "LeaderLock",
    "RedisLeaderLock",
    "PollingTriggers",
    "make_identity",
]
