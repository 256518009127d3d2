"""
Migration jobs.

- StatEventBackfill: every event into ``stat_event``
- PartnerEventExport: events of one type into their analytics table
- BotFlagSync: bot and human flags of clicks onto the ``click`` table
"""

from statmigrate.jobs.backfill import STAT_EVENT_JOB, StatEventBackfill
from statmigrate.jobs.base import BatchJob, JobProgress, advance_watermark
from statmigrate.jobs.bot_flags import BOT_FLAGS_JOB, BotFlagSync
from statmigrate.jobs.partner_export import PartnerEventExport, export_job_name

__all__ = [
    "BOT_FLAGS_JOB",
    "STAT_EVENT_JOB",
    "BatchJob",
    "BotFlagSync",
    "JobProgress",
    "PartnerEventExport",
    "StatEventBackfill",
    "advance_watermark",
    "export_job_name",
]
