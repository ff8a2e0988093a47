# nutrizen/models/referral.py
from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field

# CLICKED / SIGNED_UP are the names older web clients still send
ReferralAction = Literal["track_click", "apply_attribution", "CLICKED", "SIGNED_UP"]


class ReferralRequest(BaseModel):
    action: ReferralAction
    referral_code: Optional[str] = Field(
        default=None,
        pattern=r"^[A-Za-z0-9]{1,20}$",
        validation_alias="referralCode",
    )

    model_config = {"populate_by_name": True}
