"""Per-action award metadata as a tagged union.

Each variant carries a literal ``kind`` so stored JSON round-trips into the
right model and the achievement rules can read typed fields.
"""

from __future__ import annotations

from datetime import date
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from irac.scoring.constants import ScoringAction
from irac.scoring.exceptions import InvalidMetadataError


class _Metadata(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class PurchaseMetadata(_Metadata):
    kind: Literal["purchase"] = "purchase"
    order_id: str | None = None
    amount: int = Field(0, ge=0)  # IRR
    currency: Literal["IRR"] = "IRR"


class CourseMetadata(_Metadata):
    kind: Literal["course"] = "course"
    course_id: str | None = None
    title: str | None = None


class ReferralMetadata(_Metadata):
    kind: Literal["referral"] = "referral"
    referred_user_id: str | None = None


class LoginMetadata(_Metadata):
    kind: Literal["login"] = "login"
    streak: int = Field(1, ge=1)
    device: str | None = None
    login_date: date | None = None
    active_days: int | None = Field(None, ge=0)


class BookingMetadata(_Metadata):
    kind: Literal["booking"] = "booking"
    booking_id: str | None = None
    workshop_id: str | None = None


class ReviewMetadata(_Metadata):
    kind: Literal["review"] = "review"
    review_id: str | None = None
    target_type: str | None = None
    rating: int | None = Field(None, ge=1, le=5)


class ProfileMetadata(_Metadata):
    kind: Literal["profile"] = "profile"
    completion_percentage: int = Field(0, ge=0, le=100)


class SocialShareMetadata(_Metadata):
    kind: Literal["social_share"] = "social_share"
    platform: str | None = None
    url: str | None = None


class BonusMetadata(_Metadata):
    kind: Literal["bonus"] = "bonus"
    reason: str | None = None
    campaign: str | None = None
    active_days: int | None = Field(None, ge=0)


class PenaltyMetadata(_Metadata):
    kind: Literal["penalty"] = "penalty"
    reason: str | None = None


class AdjustmentMetadata(_Metadata):
    kind: Literal["adjustment"] = "adjustment"
    reason: str | None = None
    admin_notes: str | None = None


ActionMetadata = Annotated[
    Union[
        PurchaseMetadata,
        CourseMetadata,
        ReferralMetadata,
        LoginMetadata,
        BookingMetadata,
        ReviewMetadata,
        ProfileMetadata,
        SocialShareMetadata,
        BonusMetadata,
        PenaltyMetadata,
        AdjustmentMetadata,
    ],
    Field(discriminator="kind"),
]

_adapter: TypeAdapter[ActionMetadata] = TypeAdapter(ActionMetadata)

METADATA_FOR_ACTION: dict[ScoringAction, type[_Metadata]] = {
    ScoringAction.PURCHASE: PurchaseMetadata,
    ScoringAction.COURSE_COMPLETE: CourseMetadata,
    ScoringAction.REFERRAL: ReferralMetadata,
    ScoringAction.DAILY_LOGIN: LoginMetadata,
    ScoringAction.WORKSHOP_BOOKING: BookingMetadata,
    ScoringAction.REVIEW_WRITE: ReviewMetadata,
    ScoringAction.PROFILE_COMPLETE: ProfileMetadata,
    ScoringAction.SOCIAL_SHARE: SocialShareMetadata,
    ScoringAction.BONUS: BonusMetadata,
    ScoringAction.PENALTY: PenaltyMetadata,
    ScoringAction.MANUAL_ADJUSTMENT: AdjustmentMetadata,
}


def parse_metadata(data: dict | None) -> ActionMetadata | None:
    """Parse stored or submitted JSON into its metadata variant."""
    if not data:
        return None
    try:
        return _adapter.validate_python(data)
    except ValidationError as exc:
        raise InvalidMetadataError("Invalid action metadata", {"errors": exc.errors(include_url=False, include_context=False, include_input=False)}) from exc


def check_metadata_for_action(action: ScoringAction, metadata: ActionMetadata | None) -> None:
    """Reject metadata whose kind does not belong to ``action``."""
    if metadata is None:
        return
    expected = METADATA_FOR_ACTION[action]
    if not isinstance(metadata, expected):
        raise InvalidMetadataError(
            f"Metadata kind '{metadata.kind}' is not valid for action '{action}'",
            {"action": str(action), "kind": metadata.kind},
        )


def dump_metadata(metadata: ActionMetadata | None) -> dict:
    """JSON-ready dict for the ledger row."""
    if metadata is None:
        return {}
    return metadata.model_dump(mode="json")


def parse_action_metadata(action: ScoringAction, data: dict | None) -> ActionMetadata | None:
    """Parse submitted metadata for ``action``; ``kind`` may be omitted."""
    if not data:
        return None
    kind = METADATA_FOR_ACTION[action].model_fields["kind"].default
    metadata = parse_metadata({"kind": kind, **data})
    check_metadata_for_action(action, metadata)
    return metadata
