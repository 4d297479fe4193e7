"""Campaign service exports."""

from .campaign_service import CampaignService, CampaignTransition  # noqa: F401
from .defaults import default_point_rules, default_rewards  # noqa: F401
