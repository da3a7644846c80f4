"""Campaign execution, callbacks, appointments and reminders."""

from lead_dispatch.campaigns.scheduler import CampaignScheduler

__all__ = ["CampaignScheduler"]
