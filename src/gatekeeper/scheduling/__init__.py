"""Job scheduling."""

from .clock import Clock, SystemClock
from .scheduler import DailyTrigger, IntervalTrigger, OneShotTrigger, ScheduledJob, Scheduler

__all__ = [
    "Clock",
    "DailyTrigger",
    "IntervalTrigger",
    "OneShotTrigger",
    "ScheduledJob",
    "Scheduler",
    "SystemClock",
]
