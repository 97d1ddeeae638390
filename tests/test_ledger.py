"""Tests for the customer grant ledger."""

from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest

from paperpay.audit import EventType
from paperpay.errors import (
    DuplicateGrantError,
    GrantExpiredError,
    GrantNotFoundError,
    GrantPendingError,
    GrantSuspendedError,
    ValidationError,
)
from paperpay.grants import Grant, GrantStatus
from paperpay.kvstore import SQLiteKeyValueStore
from paperpay.ledger import SECONDS_PER_DAY, CustomerGrantStatus, GrantLedger, ledger_date


def active_grant(identifier="g-1", status=GrantStatus.ACTIVE):
    return Grant(
        identifier=identifier,
        wallet_address="https://wallet.test/alice",
        auth_server="https://auth.test/",
        access=[],
        interactive=True,
        access_token="tok" if status == GrantStatus.ACTIVE else None,
        manage_url="https://auth.test/token/1" if status == GrantStatus.ACTIVE else None,
        status=status,
    )


def authorize(ledger, customer="c-1", vendor="v-1", limit="50.00", days=30, grant=None):
    return ledger.authorize(
        customer,
        vendor,
        limit,
        days,
        vendor_name="ShopA Market",
        asset_code="ZAR",
        asset_scale=2,
        grant=grant or active_grant(f"{customer}-{vendor}"),
    )


class TestSpend:
    def test_daily_limit_scenario(self, ledger):
        record = authorize(ledger)

        first = ledger.record_spend(record.id, "30.00")
        assert first.accepted and first.spent_today == Decimal("30.00")

        over = ledger.record_spend(record.id, "25.00")
        assert not over.accepted
        assert over.receipt is None
        assert ledger.get(record.id).spent_today == Decimal("30.00")

        exact = ledger.record_spend(record.id, "20.00")
        assert exact.accepted and exact.spent_today == Decimal("50.00")
        assert exact.remaining == Decimal("0.00")

        assert not ledger.record_spend(record.id, "0.01").accepted

    def test_spend_is_quantized_to_asset_scale(self, ledger):
        record = authorize(ledger)
        result = ledger.record_spend(record.id, "10.005")
        assert result.receipt.amount == Decimal("10.01")

    @pytest.mark.parametrize("amount", ["0", "-5"])
    def test_non_positive_spend(self, ledger, amount):
        record = authorize(ledger)
        with pytest.raises(ValidationError):
            ledger.record_spend(record.id, amount)

    def test_spend_rounding_to_zero(self, ledger):
        record = authorize(ledger)
        with pytest.raises(ValidationError):
            ledger.record_spend(record.id, "0.001")

    def test_unknown_grant(self, ledger):
        with pytest.raises(GrantNotFoundError):
            ledger.record_spend("nope", "1")

    def test_pending_grant_cannot_spend(self, ledger):
        record = authorize(ledger, grant=active_grant("g-p", GrantStatus.PENDING_INTERACTION))
        with pytest.raises(GrantPendingError):
            ledger.record_spend(record.id, "1.00")

    def test_suspended_grant_cannot_spend(self, ledger):
        record = authorize(ledger)
        ledger.suspend(record.id)
        with pytest.raises(GrantSuspendedError):
            ledger.record_spend(record.id, "1.00")

    def test_expired_grant_raises_expired_not_limit(self, ledger, clock, audit):
        record = authorize(ledger, days=1)
        clock.advance(SECONDS_PER_DAY + 1)

        with pytest.raises(GrantExpiredError):
            ledger.record_spend(record.id, "1.00")

        stored = ledger.get(record.id)
        assert stored.status == CustomerGrantStatus.EXPIRED
        assert stored.grant.status == GrantStatus.EXPIRED
        assert audit.read_events(event_type=EventType.GRANT_EXPIRED)[0].grant_id == record.id

    def test_audit_records_accepted_and_denied(self, ledger, audit):
        record = authorize(ledger, limit="5.00")
        ledger.record_spend(record.id, "4.00")
        ledger.record_spend(record.id, "4.00")
        types = [e.event_type for e in audit.read_events(grant_id=record.id)]
        assert types == ["spend_recorded", "spend_denied"]


class TestRollover:
    def test_next_day_resets_spend(self, ledger, clock):
        record = authorize(ledger)
        ledger.record_spend(record.id, "50.00")
        clock.advance(SECONDS_PER_DAY)

        result = ledger.record_spend(record.id, "10.00")
        assert result.accepted
        assert result.spent_today == Decimal("10.00")
        assert ledger.get(record.id).last_reset_date == ledger_date(clock())

    def test_reverse_restores_same_day_reservation(self, ledger, audit):
        record = authorize(ledger)
        receipt = ledger.record_spend(record.id, "30.00").receipt
        restored = ledger.reverse_spend(receipt)
        assert restored.spent_today == Decimal("0.00")
        assert audit.read_events(event_type=EventType.SPEND_REVERSED)[0].amount == "30.00"

    def test_reverse_ignores_previous_day(self, ledger, clock):
        record = authorize(ledger)
        receipt = ledger.record_spend(record.id, "30.00").receipt
        clock.advance(SECONDS_PER_DAY)
        ledger.record_spend(record.id, "5.00")

        assert ledger.reverse_spend(receipt).spent_today == Decimal("5.00")


class TestAuthorize:
    def test_new_grant_defaults(self, ledger, clock):
        record = authorize(ledger)
        assert record.daily_limit == Decimal("50.00")
        assert record.spent_today == Decimal("0.00")
        assert record.status == CustomerGrantStatus.ACTIVE
        assert record.expires_at == clock() + 30 * SECONDS_PER_DAY
        assert record.last_reset_date == "2023-11-14"

    def test_duplicate_active_grant_rejected(self, ledger):
        authorize(ledger)
        with pytest.raises(DuplicateGrantError):
            authorize(ledger, grant=active_grant("other"))

    def test_suspended_pair_can_be_authorized_again(self, ledger):
        first = authorize(ledger)
        ledger.suspend(first.id)
        second = authorize(ledger, grant=active_grant("again"))
        assert second.id != first.id
        assert ledger.find_active("c-1", "v-1").id == second.id

    def test_other_vendor_is_independent(self, ledger):
        authorize(ledger, vendor="v-1")
        authorize(ledger, vendor="v-2")
        assert len(ledger.list_for_customer("c-1")) == 2

    @pytest.mark.parametrize("limit,days", [("0", 30), ("-1", 30), ("10", 0)])
    def test_invalid_terms(self, ledger, limit, days):
        with pytest.raises(ValidationError):
            authorize(ledger, limit=limit, days=days)

    def test_find_by_identifier(self, ledger):
        record = authorize(ledger, grant=active_grant("identifier-1"))
        assert ledger.find_by_identifier("identifier-1").id == record.id
        assert ledger.find_by_identifier("missing") is None


class TestLifecycle:
    def test_expire_sweep(self, ledger, clock):
        short = authorize(ledger, vendor="v-1", days=1)
        long = authorize(ledger, vendor="v-2", days=30)
        clock.advance(2 * SECONDS_PER_DAY)

        assert ledger.expire_sweep() == 1
        assert ledger.get(short.id).status == CustomerGrantStatus.EXPIRED
        assert ledger.get(long.id).status == CustomerGrantStatus.ACTIVE
        assert ledger.expire_sweep() == 0

    def test_unapproved_grant_lapses_after_interaction_ttl(self, ledger, clock):
        pending = authorize(ledger, vendor="v-1", grant=active_grant("p-1", GrantStatus.PENDING_INTERACTION))
        approved = authorize(ledger, vendor="v-2")

        clock.advance(ledger.interaction_ttl_seconds)
        assert ledger.expire_sweep() == 0
        clock.advance(1)
        assert ledger.expire_sweep() == 1

        lapsed = ledger.get(pending.id)
        assert lapsed.status == CustomerGrantStatus.EXPIRED
        assert lapsed.grant.status == GrantStatus.EXPIRED
        assert ledger.get(approved.id).status == CustomerGrantStatus.ACTIVE
        assert authorize(ledger, vendor="v-1").id != pending.id

    def test_suspend_expired_grant_raises(self, ledger, clock):
        record = authorize(ledger, days=1)
        clock.advance(2 * SECONDS_PER_DAY)
        with pytest.raises(GrantExpiredError):
            ledger.suspend(record.id)

    def test_attach_tokens_indexes_identifier(self, ledger):
        record = authorize(ledger, grant=active_grant("g-old", GrantStatus.PENDING_INTERACTION))
        assert not record.interaction_completed
        updated = ledger.attach_tokens(record.id, active_grant("g-old"))
        assert updated.interaction_completed
        assert ledger.find_by_identifier("g-old").id == record.id

    def test_list_filters_by_status(self, ledger):
        a = authorize(ledger, vendor="v-1")
        authorize(ledger, vendor="v-2")
        ledger.suspend(a.id)
        suspended = ledger.list_for_customer("c-1", status=CustomerGrantStatus.SUSPENDED)
        assert [g.id for g in suspended] == [a.id]

    def test_public_view_hides_tokens(self, ledger):
        record = authorize(ledger)
        public = record.to_public_dict()
        assert "grant" not in public
        assert public["remaining_today"] == "50.00"
        assert public["interaction_completed"] is True


def test_concurrent_spends_never_exceed_limit(tmp_path, clock):
    ledger = GrantLedger(SQLiteKeyValueStore(tmp_path / "ledger.sqlite3", clock=clock), clock=clock)
    record = authorize(ledger, limit="50.00")

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: ledger.record_spend(record.id, "5.00"), range(20)))

    assert sum(1 for r in results if r.accepted) == 10
    assert ledger.get(record.id).spent_today == Decimal("50.00")
