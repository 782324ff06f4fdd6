"""Tagged metadata parsing tests."""

from datetime import date

import pytest

from irac.scoring.constants import ScoringAction
from irac.scoring.exceptions import InvalidMetadataError
from irac.scoring.metadata import (
    LoginMetadata,
    PurchaseMetadata,
    ReviewMetadata,
    check_metadata_for_action,
    dump_metadata,
    parse_action_metadata,
    parse_metadata,
)


class TestParseMetadata:
    def test_empty_is_none(self):
        assert parse_metadata(None) is None
        assert parse_metadata({}) is None

    def test_discriminates_on_kind(self):
        metadata = parse_metadata({"kind": "purchase", "order_id": "o-1", "amount": 250_000})
        assert isinstance(metadata, PurchaseMetadata)
        assert metadata.amount == 250_000
        assert metadata.currency == "IRR"

    def test_unknown_kind_rejected(self):
        with pytest.raises(InvalidMetadataError):
            parse_metadata({"kind": "lottery"})

    def test_extra_fields_rejected(self):
        with pytest.raises(InvalidMetadataError) as exc_info:
            parse_metadata({"kind": "review", "stars": 5})
        assert exc_info.value.details["errors"]

    def test_non_irr_currency_rejected(self):
        with pytest.raises(InvalidMetadataError):
            parse_metadata({"kind": "purchase", "amount": 10, "currency": "USD"})

    def test_rating_bounds(self):
        with pytest.raises(InvalidMetadataError):
            parse_metadata({"kind": "review", "rating": 6})

    def test_login_date_parsed(self):
        metadata = parse_metadata({"kind": "login", "streak": 3, "login_date": "2026-03-02"})
        assert isinstance(metadata, LoginMetadata)
        assert metadata.login_date == date(2026, 3, 2)


class TestActionMetadata:
    def test_kind_inferred_from_action(self):
        metadata = parse_action_metadata(ScoringAction.REVIEW_WRITE, {"rating": 4})
        assert isinstance(metadata, ReviewMetadata)
        assert metadata.rating == 4

    def test_mismatched_kind_rejected(self):
        with pytest.raises(InvalidMetadataError):
            parse_action_metadata(ScoringAction.PURCHASE, {"kind": "review", "rating": 4})

    def test_check_accepts_none(self):
        check_metadata_for_action(ScoringAction.BONUS, None)

    def test_check_rejects_other_kind(self):
        with pytest.raises(InvalidMetadataError) as exc_info:
            check_metadata_for_action(ScoringAction.BONUS, PurchaseMetadata(amount=1))
        assert exc_info.value.details == {"action": "bonus", "kind": "purchase"}


class TestDumpMetadata:
    def test_none_dumps_empty(self):
        assert dump_metadata(None) == {}

    def test_dump_is_json_ready(self):
        dumped = dump_metadata(LoginMetadata(streak=2, login_date=date(2026, 3, 2)))
        assert dumped["kind"] == "login"
        assert dumped["login_date"] == "2026-03-02"
        assert parse_metadata(dumped) == LoginMetadata(streak=2, login_date=date(2026, 3, 2))
