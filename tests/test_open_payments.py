"""Tests for the Open Payments wire types and clients."""

import json

import httpx
import pytest

from paperpay.errors import DownstreamError, ProtocolError, ValidationError
from paperpay.open_payments import (
    AccessLimits,
    AccessSpec,
    AccessType,
    ActiveAccess,
    Amount,
    AuthServerClient,
    PendingInteraction,
    ResourceServerClient,
    isoformat_utc,
    parse_grant_response,
    repeating_interval,
)

from conftest import CLIENT_WALLET


TOKEN = {"value": "tok", "manage": "https://auth.test/token/1", "access": []}
CONTINUE = {"uri": "https://auth.test/continue/1", "access_token": {"value": "cont"}, "wait": 5}


class TestParseGrantResponse:
    def test_pending_interaction(self):
        response = parse_grant_response({
            "interact": {"redirect": "https://auth.test/interact/1", "finish": "n-1"},
            "continue": CONTINUE,
        })
        assert isinstance(response, PendingInteraction)
        assert response.redirect_url == "https://auth.test/interact/1"
        assert response.interact_nonce == "n-1"
        assert response.continuation.access_token == "cont"
        assert response.continuation.wait == 5

    def test_active_access(self):
        response = parse_grant_response({"access_token": TOKEN, "continue": CONTINUE})
        assert isinstance(response, ActiveAccess)
        assert response.access_token == "tok"
        assert response.manage_url == "https://auth.test/token/1"

    def test_token_list_takes_first(self):
        response = parse_grant_response({"access_token": [TOKEN]})
        assert isinstance(response, ActiveAccess)
        assert response.continuation is None

    @pytest.mark.parametrize("data", [
        {},
        [],
        {"interact": {"redirect": "r", "finish": "f"}, "access_token": TOKEN, "continue": CONTINUE},
        {"interact": {"redirect": "r", "finish": "f"}},
        {"interact": {"redirect": "r"}, "continue": CONTINUE},
        {"access_token": {"value": "tok"}},
        {"access_token": []},
    ])
    def test_malformed_responses(self, data):
        with pytest.raises(ProtocolError):
            parse_grant_response(data)


class TestAccessTypes:
    def test_access_spec_wire_shape(self):
        spec = AccessSpec(
            AccessType.OUTGOING_PAYMENT,
            ["create", "read"],
            identifier="https://wallet.test/alice",
            limits=AccessLimits(debit_amount=Amount("5000", "ZAR", 2), interval="R/x/P1D"),
        )
        assert spec.to_dict() == {
            "type": "outgoing-payment",
            "actions": ["create", "read"],
            "identifier": "https://wallet.test/alice",
            "limits": {
                "debitAmount": {"value": "5000", "assetCode": "ZAR", "assetScale": 2},
                "interval": "R/x/P1D",
            },
        }
        assert AccessSpec.from_dict(spec.to_dict()) == spec

    def test_unknown_access_type(self):
        with pytest.raises(ProtocolError):
            AccessSpec.from_dict({"type": "payment-pointer", "actions": []})

    def test_repeating_interval(self):
        assert isoformat_utc(1_700_000_000) == "2023-11-14T22:13:20.000Z"
        assert repeating_interval(1_700_000_000, "P1D") == "R/2023-11-14T22:13:20.000Z/P1D"
        assert repeating_interval(1_700_000_000, "P1M", 12) == "R12/2023-11-14T22:13:20.000Z/P1M"
        with pytest.raises(ValidationError):
            repeating_interval(1_700_000_000, "P1D", 0)


class TestAuthServerClient:
    def _client(self, handler):
        return AuthServerClient(httpx.Client(transport=httpx.MockTransport(handler)), CLIENT_WALLET)

    def test_grant_request_body(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"access_token": TOKEN})

        spec = AccessSpec(AccessType.QUOTE, ["create", "read"])
        self._client(handler).request_grant("https://auth.test/", [spec])
        body = json.loads(seen[0].content)
        assert body == {
            "access_token": {"access": [{"type": "quote", "actions": ["create", "read"]}]},
            "client": CLIENT_WALLET,
        }
        assert "authorization" not in seen[0].headers

    def test_continue_sends_gnap_token(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"access_token": TOKEN})

        active = self._client(handler).continue_grant("https://auth.test/continue/1", "cont", "ref")
        assert active.access_token == "tok"
        assert seen[0].headers["authorization"] == "GNAP cont"
        assert json.loads(seen[0].content) == {"interact_ref": "ref"}

    def test_continue_returning_interaction_is_protocol_error(self):
        def handler(request):
            return httpx.Response(200, json={
                "interact": {"redirect": "r", "finish": "f"},
                "continue": CONTINUE,
            })

        with pytest.raises(ProtocolError):
            self._client(handler).continue_grant("https://auth.test/continue/1", "cont", "ref")

    def test_rotation_requires_access_token(self):
        client = self._client(lambda request: httpx.Response(200, json={}))
        with pytest.raises(ProtocolError):
            client.rotate_token("https://auth.test/token/1", "tok")

    def test_revoke_accepts_no_content(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(204)

        self._client(handler).revoke_grant("https://auth.test/continue/1", "cont")
        assert seen[0].method == "DELETE"


class TestResourceServerClient:
    def _client(self, handler):
        return ResourceServerClient(httpx.Client(transport=httpx.MockTransport(handler)))

    def test_rejection_keeps_detail_for_logs(self):
        client = self._client(lambda request: httpx.Response(403, text="limit reached"))
        with pytest.raises(DownstreamError) as exc:
            client.create_quote("https://rs.test", "tok", "https://wallet.test/alice", "https://rs.test/ip/1")
        assert exc.value.status_code == 403
        assert exc.value.detail == "limit reached"
        assert "limit reached" not in str(exc.value)

    def test_timeout_is_downstream(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(DownstreamError, match="timed out"):
            self._client(handler).create_incoming_payment("https://rs.test", "tok", "https://wallet.test/shop")

    def test_malformed_record_is_downstream(self):
        client = self._client(lambda request: httpx.Response(201, json={"id": "x"}))
        with pytest.raises(DownstreamError, match="malformed"):
            client.create_incoming_payment("https://rs.test", "tok", "https://wallet.test/shop")

    def test_outgoing_payment_needs_exactly_one_target(self):
        client = self._client(lambda request: httpx.Response(500))
        with pytest.raises(ValidationError):
            client.create_outgoing_payment("https://rs.test", "tok", "w", quote_id="q", incoming_payment="i")
        with pytest.raises(ValidationError):
            client.create_outgoing_payment("https://rs.test", "tok", "w")
        with pytest.raises(ValidationError):
            client.create_outgoing_payment("https://rs.test", "tok", "w", incoming_payment="i")

    def test_incoming_payment_request(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(201, json={
                "id": "https://rs.test/incoming-payments/1",
                "walletAddress": "https://wallet.test/shop",
                "incomingAmount": {"value": "1250", "assetCode": "ZAR", "assetScale": 2},
            })

        record = self._client(handler).create_incoming_payment(
            "https://rs.test/",
            "tok",
            "https://wallet.test/shop",
            incoming_amount=Amount("1250", "ZAR", 2),
            metadata={"description": "bread"},
        )
        assert str(seen[0].url) == "https://rs.test/incoming-payments"
        assert seen[0].headers["authorization"] == "GNAP tok"
        assert json.loads(seen[0].content)["metadata"] == {"description": "bread"}
        assert record.incoming_amount == Amount("1250", "ZAR", 2)
        assert record.completed is False
