"""
SQLAlchemy models package.
Import all models here to ensure they're registered with Base.metadata.
"""
from mailroom.models.campaigns import Campaign, CampaignType, CampaignStatus
from mailroom.models.ab_variants import ABVariant
from mailroom.models.recipients import CampaignRecipient, RecipientStatus
from mailroom.models.campaign_history import CampaignHistory, CampaignAction
from mailroom.models.unsubscribes import EmailUnsubscribe
from mailroom.models.jobs import JobLease, JobStatus
from mailroom.models.email_usage import EmailMonthlyUsage
from mailroom.models.preorders import Preorder
from mailroom.models.subscribers import NewsletterSubscriber
from mailroom.models.customers import Customer

__all__ = [
    "Campaign",
    "CampaignType",
    "CampaignStatus",
    "ABVariant",
    "CampaignRecipient",
    "RecipientStatus",
    "CampaignHistory",
    "CampaignAction",
    "EmailUnsubscribe",
    "JobLease",
    "JobStatus",
    "EmailMonthlyUsage",
    "Preorder",
    "NewsletterSubscriber",
    "Customer",
]
