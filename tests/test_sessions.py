"""Tests for payment sessions and pending instant-pay grants."""

from concurrent.futures import ThreadPoolExecutor

import pytest

from paperpay.errors import SessionExpiredError, SessionNotFoundError, ValidationError
from paperpay.grants import Grant, GrantStatus
from paperpay.open_payments import Amount, QuoteRecord
from paperpay.sessions import PaymentSession, PendingGrantCache, SessionCache


def pending_grant(identifier="grant-1"):
    return Grant(
        identifier=identifier,
        wallet_address="https://wallet.test/alice",
        auth_server="https://auth.test/",
        access=[],
        interactive=True,
        client_nonce="cn",
        interact_nonce="in",
        continue_uri="https://auth.test/continue/1",
        continue_token="cont-1",
        status=GrantStatus.PENDING_INTERACTION,
    )


def session(session_id="s-1"):
    amount = Amount("1250", "ZAR", 2)
    return PaymentSession(
        session_id=session_id,
        quote=QuoteRecord(
            id="https://rs.test/quotes/1",
            wallet_address="https://wallet.test/alice",
            receiver="https://rs.test/incoming-payments/1",
            debit_amount=amount,
            receive_amount=amount,
        ),
        incoming_payment_url="https://rs.test/incoming-payments/1",
        sender_wallet="https://wallet.test/alice",
        receiver_wallet="https://wallet.test/shop",
        grant=pending_grant(),
        amount="12.50",
    )


@pytest.fixture
def sessions(store, clock):
    return SessionCache(store, ttl_seconds=180, grace_seconds=60, clock=clock)


class TestSessionCache:
    def test_open_sets_expiry(self, sessions, clock):
        opened = sessions.open(session())
        assert opened.created_at == clock()
        assert opened.expires_at == clock() + 180
        assert opened.seconds_remaining(clock()) == 180

    def test_peek_does_not_consume(self, sessions):
        sessions.open(session())
        assert sessions.peek("s-1").grant.identifier == "grant-1"
        assert sessions.consume("s-1").quote.id == "https://rs.test/quotes/1"

    def test_consume_is_single_use(self, sessions):
        sessions.open(session())
        sessions.consume("s-1")
        with pytest.raises(SessionNotFoundError):
            sessions.consume("s-1")
        with pytest.raises(SessionNotFoundError):
            sessions.peek("s-1")

    def test_expired_session_reported_during_grace(self, sessions, clock):
        sessions.open(session())
        clock.advance(181)
        with pytest.raises(SessionExpiredError):
            sessions.peek("s-1")
        with pytest.raises(SessionExpiredError):
            sessions.consume("s-1")

    def test_session_gone_after_grace(self, sessions, clock):
        sessions.open(session())
        clock.advance(241)
        with pytest.raises(SessionNotFoundError):
            sessions.peek("s-1")

    def test_live_duplicate_rejected(self, sessions, clock):
        sessions.open(session())
        with pytest.raises(ValidationError):
            sessions.open(session())
        clock.advance(200)
        assert sessions.open(session()).expires_at == clock() + 180

    def test_discard(self, sessions):
        sessions.open(session())
        assert sessions.discard("s-1")
        assert not sessions.discard("s-1")

    def test_concurrent_consume_has_one_winner(self, sessions):
        sessions.open(session())

        def attempt(_):
            try:
                return sessions.consume("s-1")
            except SessionNotFoundError:
                return None

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(attempt, range(8)))
        assert sum(1 for r in results if r is not None) == 1


class TestPendingGrantCache:
    @pytest.fixture
    def cache(self, store, clock):
        return PendingGrantCache(store, ttl_seconds=300, grace_seconds=60, clock=clock)

    def test_put_get_take(self, cache):
        entry = cache.put(pending_grant(), context={"max_amount": "100"})
        assert cache.get("grant-1").context == {"max_amount": "100"}
        assert cache.take("grant-1").expires_at == entry.expires_at
        with pytest.raises(SessionNotFoundError):
            cache.take("grant-1")

    def test_expiry(self, cache, clock):
        cache.put(pending_grant(), ttl=10)
        clock.advance(11)
        with pytest.raises(SessionExpiredError):
            cache.get("grant-1")
        clock.advance(60)
        with pytest.raises(SessionNotFoundError):
            cache.get("grant-1")
