"""Shared fixtures: a fake Open Payments network behind httpx.MockTransport."""

import itertools
import json

import httpx
import pytest

from paperpay import interaction
from paperpay.accounts import AccountRegistry
from paperpay.audit import AuditTrail
from paperpay.config import PaperPayConfig
from paperpay.grants import GrantNegotiator
from paperpay.kvstore import InMemoryKeyValueStore
from paperpay.ledger import GrantLedger
from paperpay.open_payments import AuthServerClient, ResourceServerClient
from paperpay.pipeline import PaymentPipeline
from paperpay.qr import QRBundler
from paperpay.service import PaperPayService
from paperpay.sessions import PendingGrantCache, SessionCache
from paperpay.wallet import WalletDirectory


AUTH = "https://auth.test/"
RS = "https://rs.test"
CLIENT_WALLET = "https://wallet.test/paperpay"
START = 1_700_000_000.0  # 2023-11-14T22:13:20Z


class FakeClock:
    def __init__(self, now: float = START):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeOpenPayments:
    """Wallet documents, an authorization server and a resource server in one handler."""

    def __init__(self):
        self.wallets = {}
        self.requests = []
        self.grant_requests = []
        self.pending = {}
        self.tokens = {}
        self.incoming = {}
        self.quotes = {}
        self.outgoing = []
        self.continue_calls = 0
        self.rotations = 0
        self.grant_mode = None
        self.outgoing_status = None
        self._seq = itertools.count(1)

    # ── setup helpers ──────────────────────────────────────────

    def add_wallet(self, name, asset_code="ZAR", asset_scale=2):
        url = f"https://wallet.test/{name}"
        self.wallets[url] = {
            "id": url,
            "assetCode": asset_code,
            "assetScale": asset_scale,
            "authServer": AUTH,
            "resourceServer": RS,
            "publicName": name.title(),
        }
        return url

    def issue_token(self, access=None):
        """Hand out a token directly, as if a grant had completed earlier."""
        wire = self._issue(access or [])
        return wire["value"], wire["manage"]

    def last_pending_id(self):
        return list(self.pending)[-1]

    def approve(self, pending_id=None, auth_server=AUTH):
        """Simulate the user approving: returns (interact_ref, hash) for the redirect."""
        pending_id = pending_id or self.last_pending_id()
        p = self.pending[pending_id]
        ref = f"ref-{pending_id}"
        p["ref"] = ref
        return ref, interaction.compute_hash(p["client_nonce"], p["interact_nonce"], ref, auth_server)

    # ── transport ──────────────────────────────────────────────

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.url.host
        path = request.url.path

        if host == "wallet.test":
            doc = self.wallets.get(str(request.url))
            if doc is None:
                return httpx.Response(404, json={"error": "unknown wallet"})
            return httpx.Response(200, json=doc)

        body = json.loads(request.content) if request.content else {}
        token = request.headers.get("authorization", "").removeprefix("GNAP ")

        if host == "auth.test":
            if path == "/" and request.method == "POST":
                return self._grant(body)
            if path.startswith("/continue/"):
                if request.method == "DELETE":
                    return httpx.Response(204)
                return self._continue(path.rsplit("/", 1)[1], token, body)
            if path.startswith("/token/"):
                return self._rotate(str(request.url), token)

        if host == "rs.test":
            if token not in self.tokens:
                return httpx.Response(401, json={"error": "invalid token"})
            if path == "/incoming-payments":
                return self._incoming(body)
            if path == "/quotes":
                return self._quote(body)
            if path == "/outgoing-payments":
                return self._outgoing(body)

        return httpx.Response(404, json={"error": "not found"})

    def _continuation(self, n):
        return {"uri": f"{AUTH}continue/{n}", "access_token": {"value": f"cont-{n}"}, "wait": 5}

    def _issue(self, access):
        n = next(self._seq)
        wire = {
            "value": f"tok-{n}",
            "manage": f"{AUTH}token/{n}",
            "access": access,
            "expires_in": 600,
        }
        self.tokens[wire["value"]] = wire
        return wire

    def _grant(self, body):
        self.grant_requests.append(body)
        access = body["access_token"]["access"]
        interactive = "interact" in body
        if self.grant_mode == "token":
            interactive = False
        elif self.grant_mode == "interact":
            interactive = True

        n = next(self._seq)
        if interactive:
            finish = body.get("interact", {}).get("finish", {})
            self.pending[str(n)] = {
                "access": access,
                "client_nonce": finish.get("nonce", ""),
                "interact_nonce": f"inonce-{n}",
                "finish_uri": finish.get("uri"),
                "ref": None,
            }
            return httpx.Response(200, json={
                "interact": {"redirect": f"{AUTH}interact/{n}", "finish": f"inonce-{n}"},
                "continue": self._continuation(n),
            })
        return httpx.Response(200, json={
            "access_token": self._issue(access),
            "continue": self._continuation(n),
        })

    def _continue(self, pending_id, token, body):
        p = self.pending.get(pending_id)
        if p is None or token != f"cont-{pending_id}":
            return httpx.Response(401, json={"error": "invalid continuation"})
        if p["ref"] is None or body.get("interact_ref") != p["ref"]:
            return httpx.Response(400, json={"error": "invalid interact_ref"})
        self.continue_calls += 1
        return httpx.Response(200, json={
            "access_token": self._issue(p["access"]),
            "continue": self._continuation(pending_id),
        })

    def _rotate(self, manage_url, token):
        current = self.tokens.get(token)
        if current is None or current["manage"] != manage_url:
            return httpx.Response(401, json={"error": "invalid token"})
        del self.tokens[token]
        self.rotations += 1
        return httpx.Response(200, json={"access_token": self._issue(current["access"])})

    def _incoming(self, body):
        n = next(self._seq)
        record = {
            "id": f"{RS}/incoming-payments/{n}",
            "walletAddress": body["walletAddress"],
            "incomingAmount": body.get("incomingAmount"),
            "expiresAt": body.get("expiresAt"),
            "completed": False,
            "metadata": body.get("metadata", {}),
        }
        self.incoming[record["id"]] = record
        return httpx.Response(201, json=record)

    def _quote(self, body):
        incoming = self.incoming.get(body["receiver"])
        if incoming is None:
            return httpx.Response(400, json={"error": "unknown receiver"})
        sender = self.wallets[body["walletAddress"]]
        amount = body.get("debitAmount") or incoming["incomingAmount"]
        n = next(self._seq)
        quote = {
            "id": f"{RS}/quotes/{n}",
            "walletAddress": body["walletAddress"],
            "receiver": body["receiver"],
            "debitAmount": {
                "value": amount["value"],
                "assetCode": sender["assetCode"],
                "assetScale": sender["assetScale"],
            },
            "receiveAmount": incoming["incomingAmount"],
            "expiresAt": None,
        }
        self.quotes[quote["id"]] = quote
        return httpx.Response(201, json=quote)

    def _outgoing(self, body):
        if self.outgoing_status is not None:
            return httpx.Response(self.outgoing_status, json={"error": "internal detail secret"})
        n = next(self._seq)
        quote = self.quotes.get(body.get("quoteId"))
        debit = quote["debitAmount"] if quote else body.get("debitAmount")
        record = {
            "id": f"{RS}/outgoing-payments/{n}",
            "walletAddress": body["walletAddress"],
            "receiver": quote["receiver"] if quote else body.get("incomingPayment"),
            "quoteId": body.get("quoteId"),
            "debitAmount": debit,
            "sentAmount": debit,
            "failed": False,
            "metadata": body.get("metadata", {}),
        }
        self.outgoing.append(record)
        return httpx.Response(201, json=record)


# ── fixtures ──────────────────────────────────────────────────────


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake():
    network = FakeOpenPayments()
    network.add_wallet("alice")
    network.add_wallet("shop")
    return network


@pytest.fixture
def http_client(fake):
    client = httpx.Client(transport=httpx.MockTransport(fake.handler))
    yield client
    client.close()


@pytest.fixture
def store(clock):
    return InMemoryKeyValueStore(clock=clock)


@pytest.fixture
def audit(tmp_path):
    return AuditTrail(path=tmp_path / "audit.jsonl", key_path=tmp_path / "secrets" / "audit_hmac.key")


@pytest.fixture
def wallets(http_client):
    return WalletDirectory(http_client)


@pytest.fixture
def negotiator(http_client, audit, clock):
    return GrantNegotiator(AuthServerClient(http_client, CLIENT_WALLET), audit=audit, clock=clock)


@pytest.fixture
def pipeline(negotiator, http_client, clock):
    return PaymentPipeline(negotiator, ResourceServerClient(http_client), clock=clock)


@pytest.fixture
def ledger(store, audit, clock):
    return GrantLedger(store, audit=audit, clock=clock)


@pytest.fixture
def config(tmp_path):
    return PaperPayConfig(
        base_url="https://paperpay.test",
        frontend_url="https://shop.paperpay.test",
        data_dir=tmp_path,
        qr_signing_secret=b"test-qr-secret",
    )


@pytest.fixture
def service(config, wallets, negotiator, pipeline, ledger, store, audit, clock):
    return PaperPayService(
        config=config,
        wallets=wallets,
        negotiator=negotiator,
        pipeline=pipeline,
        ledger=ledger,
        sessions=SessionCache(store, ttl_seconds=config.session_ttl_seconds, clock=clock),
        pending_grants=PendingGrantCache(store, ttl_seconds=config.interaction_ttl_seconds, clock=clock),
        accounts=AccountRegistry(store, clock=clock),
        bundler=QRBundler(ledger, config.qr_signing_secret, audit=audit, clock=clock),
        audit=audit,
        clock=clock,
    )
