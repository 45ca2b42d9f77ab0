"""
Helpers for loading and updating the admin trial campaign.

The campaign is stored as a JSON document on the singleton TrialSettings
row and read back through a strongly typed pydantic overlay.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Annotated
from typing import Any

from pydantic import BaseModel
from pydantic import Field
from pydantic import ValidationError as PydanticValidationError
from pydantic import model_validator

from piopi.billing.models import TrialSettings

logger = logging.getLogger(__name__)


class TrialCampaign(BaseModel):
    """
    Time boxed replacement of the base trial length.

    A campaign with no start or end date runs as soon as it is active and
    until it is switched off.
    """

    active: bool = False
    days: int = Field(default=0, ge=0)
    name: str | None = None
    description: str | None = None
    starts_at: datetime | None = None
    ends_at: datetime | None = None

    @model_validator(mode="after")
    def _check_window(self) -> TrialCampaign:
        if self.starts_at and self.ends_at and self.ends_at < self.starts_at:
            raise ValueError("Campaign ends before it starts.")
        if self.active and self.days <= 0:
            raise ValueError("An active campaign needs a positive length.")
        return self

    def is_running(self, now: datetime) -> bool:
        if not self.active:
            return False
        if self.starts_at and self.starts_at > now:
            return False
        return not (self.ends_at and self.ends_at < now)


class TrialConfig(BaseModel):
    """
    Admin trial settings.

    ``default_trial_days`` is the base trial length chosen in the admin
    panel. When it has never been set, ``BILLING_TRIAL_BASE_DAYS`` applies.
    """

    default_trial_days: Annotated[int, Field(gt=0)] | None = None
    campaign: TrialCampaign = TrialCampaign()


def _load_row() -> TrialSettings:
    obj, _ = TrialSettings.objects.get_or_create(
        slug=TrialSettings.DEFAULT_SLUG,
        defaults={"data": {}},
    )
    return obj


def get_trial_config() -> TrialConfig:
    """
    Fetch the singleton TrialSettings row and return a typed view of it.
    """
    obj = _load_row()
    try:
        return TrialConfig(**(obj.data or {}))
    except PydanticValidationError:
        logger.warning(
            "Invalid trial settings JSON detected; falling back to defaults.",
            exc_info=True,
        )
        return TrialConfig()


def update_trial_campaign(payload: dict[str, Any]) -> TrialConfig:
    """
    Replace the trial campaign, and the base trial length when
    ``default_trial_days`` is part of ``payload``.

    An inactive campaign is stored without its name, dates or length, the
    same way the admin panel clears them. Without ``default_trial_days`` the
    stored base length is kept.

    Raises:
        pydantic.ValidationError: if the payload is not a valid campaign or
            the base length is not a positive number of days.
    """
    payload = dict(payload)
    if "default_trial_days" in payload:
        default_trial_days = payload.pop("default_trial_days")
    else:
        default_trial_days = get_trial_config().default_trial_days

    campaign = TrialCampaign(**payload)
    if not campaign.active:
        campaign = TrialCampaign()
    config = TrialConfig(default_trial_days=default_trial_days, campaign=campaign)

    obj = _load_row()
    obj.data = config.model_dump(mode="json")
    obj.save(update_fields=["data", "modified"])
    logger.info(
        "Trial settings updated: default_days=%s campaign_active=%s days=%s",
        config.default_trial_days,
        campaign.active,
        campaign.days,
    )
    return config
