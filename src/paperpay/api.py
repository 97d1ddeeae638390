"""
HTTP surface for PaperPay.

Endpoints are plain ``def`` functions so FastAPI runs them on its thread
pool; the service underneath is synchronous and serialises work per grant.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Optional

from fastapi import APIRouter, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .errors import (
    AuthenticationError,
    DownstreamError,
    DuplicateGrantError,
    GrantExpiredError,
    GrantPendingError,
    GrantSuspendedError,
    LimitExceededError,
    NotFoundError,
    PaperPayError,
    ProtocolError,
    SessionExpiredError,
    ValidationError,
)
from .ledger import CustomerGrantStatus
from .qr import QRBundle
from .service import PaperPayService

logger = logging.getLogger(__name__)

# Most specific first.
STATUS_CODES: list[tuple[type[PaperPayError], int]] = [
    (SessionExpiredError, 410),
    (GrantExpiredError, 410),
    (DuplicateGrantError, 409),
    (GrantSuspendedError, 409),
    (GrantPendingError, 409),
    (NotFoundError, 404),
    (ValidationError, 400),
    (AuthenticationError, 401),
    (LimitExceededError, 403),
    (ProtocolError, 502),
    (DownstreamError, 500),
]


def status_for(exc: PaperPayError) -> int:
    for exc_type, status in STATUS_CODES:
        if isinstance(exc, exc_type):
            return status
    return 500


# ============================================================================
# Request models
# ============================================================================


class StartSessionRequest(BaseModel):
    session_id: str = Field(min_length=1)
    sender_wallet_address: str
    receiver_wallet_address: str
    amount: Decimal = Field(gt=0)
    description: Optional[str] = None
    redirect_url: Optional[str] = None


class ApprovePaymentRequest(BaseModel):
    session_id: str = Field(min_length=1)
    interact_ref: str = Field(min_length=1)
    hash: str = Field(min_length=1)


class IncomingPaymentRequest(BaseModel):
    receiver_wallet_address: str
    amount: Decimal = Field(gt=0)
    description: Optional[str] = None


class QuoteRequest(BaseModel):
    sender_wallet_address: str
    incoming_payment_url: str = Field(min_length=1)


class SubscriptionPaymentRequest(BaseModel):
    receiver_wallet_address: str
    manage_url: str = Field(min_length=1)
    previous_token: str = Field(min_length=1)


class InstantPaySetupRequest(BaseModel):
    wallet_address: str
    max_amount: Decimal = Field(gt=0)
    redirect_url: Optional[str] = None


class SubscriptionSetupRequest(BaseModel):
    wallet_address: str
    debit_amount: Optional[Decimal] = Field(default=None, gt=0)
    receive_amount: Optional[Decimal] = Field(default=None, gt=0)
    payments: Optional[int] = Field(default=None, gt=0)
    duration: Optional[str] = None
    redirect_url: Optional[str] = None


class SetupCompleteRequest(BaseModel):
    identifier: str = Field(min_length=1)
    interact_ref: str = Field(min_length=1)
    hash: str = Field(min_length=1)


class InstantPayRequest(BaseModel):
    access_token: str = Field(min_length=1)
    manage_url: str = Field(min_length=1)
    vendor_wallet_address: str
    sender_wallet_address: str
    amount: Decimal = Field(gt=0)
    description: Optional[str] = None


class CreateCustomerRequest(BaseModel):
    name: str = Field(min_length=1)
    wallet_address: str
    phone: Optional[str] = None
    email: Optional[str] = None


class CreateVendorRequest(BaseModel):
    name: str = Field(min_length=1)
    wallet_address: str


class AuthorizeVendorRequest(BaseModel):
    vendor_id: str = Field(min_length=1)
    daily_limit: Decimal = Field(gt=0)
    expiration_days: Optional[int] = Field(default=None, gt=0)


class GrantPaymentRequest(BaseModel):
    amount: Decimal = Field(gt=0)
    description: Optional[str] = None


class VerifyBundleRequest(BaseModel):
    bundle: Optional[dict[str, Any]] = None
    qr_text: Optional[str] = None


# ============================================================================
# Routes
# ============================================================================


def _build_router(service: PaperPayService) -> APIRouter:
    router = APIRouter(prefix="/api")

    @router.get("/health")
    def health():
        return service.health()

    # -- checkout --------------------------------------------------------

    @router.post("/start-payment-session")
    def start_payment_session(req: StartSessionRequest):
        session = service.start_payment_session(
            req.session_id,
            req.sender_wallet_address,
            req.receiver_wallet_address,
            req.amount,
            req.description,
            req.redirect_url,
        )
        return {
            "session_id": session.session_id,
            "redirect_url": session.grant.redirect_url,
            "quote": session.quote.to_dict(),
            "incoming_payment_url": session.incoming_payment_url,
            "expires_at": session.expires_at,
        }

    @router.post("/approve-payment")
    def approve_payment(req: ApprovePaymentRequest):
        payment = service.approve_payment(req.session_id, req.interact_ref, req.hash)
        return {"outgoing_payment": payment.to_dict()}

    @router.post("/create-incoming-payment")
    def create_incoming_payment(req: IncomingPaymentRequest):
        record = service.create_incoming_payment(req.receiver_wallet_address, req.amount, req.description)
        return {"data": record.to_dict()}

    @router.post("/create-quote")
    def create_quote(req: QuoteRequest):
        quote = service.create_quote(req.sender_wallet_address, req.incoming_payment_url)
        return {"data": quote.to_dict()}

    @router.post("/subscriptions/setup")
    def subscription_setup(req: SubscriptionSetupRequest):
        setup = service.setup_subscription(
            req.wallet_address,
            req.debit_amount,
            req.receive_amount,
            req.payments,
            req.duration,
            req.redirect_url,
        )
        return setup.to_dict()

    @router.post("/subscriptions/complete")
    def subscription_complete(req: SetupCompleteRequest):
        token = service.complete_subscription_setup(req.identifier, req.interact_ref, req.hash)
        return {"access_token": token.value, "manage_url": token.manage_url}

    @router.post("/subscription-payment")
    def subscription_payment(req: SubscriptionPaymentRequest):
        result = service.process_subscription_payment(
            req.receiver_wallet_address, req.manage_url, req.previous_token
        )
        return {"data": result.to_dict()}

    # -- instant pay -----------------------------------------------------

    @router.post("/instant-pay/setup")
    def instant_pay_setup(req: InstantPaySetupRequest):
        return service.setup_instant_pay(req.wallet_address, req.max_amount, req.redirect_url).to_dict()

    @router.post("/instant-pay/complete")
    def instant_pay_complete(req: SetupCompleteRequest):
        token = service.complete_instant_pay_setup(req.identifier, req.interact_ref, req.hash)
        return {"access_token": token.value, "manage_url": token.manage_url}

    @router.post("/instant-pay/pay")
    def instant_pay(req: InstantPayRequest):
        result = service.make_instant_payment(
            req.access_token,
            req.manage_url,
            req.vendor_wallet_address,
            req.sender_wallet_address,
            req.amount,
            req.description,
        )
        return result.to_dict()

    # -- customers and vendors ------------------------------------------

    @router.post("/customers", status_code=201)
    def create_customer(req: CreateCustomerRequest):
        customer = service.accounts.create_customer(req.name, req.wallet_address, req.phone, req.email)
        return {"customer": customer.to_public_dict()}

    @router.get("/customers")
    def list_customers():
        return {"customers": [c.to_public_dict() for c in service.accounts.list_customers()]}

    @router.get("/customers/{customer_id}")
    def get_customer(customer_id: str):
        return service.customer_view(customer_id)

    @router.get("/vendors")
    def list_vendors():
        return {"vendors": [v.to_dict() for v in service.accounts.list_vendors()]}

    @router.post("/vendors", status_code=201)
    def create_vendor(req: CreateVendorRequest):
        return {"vendor": service.accounts.create_vendor(req.name, req.wallet_address).to_dict()}

    @router.post("/customers/{customer_id}/grants", status_code=201)
    def authorize_vendor(customer_id: str, req: AuthorizeVendorRequest):
        result = service.authorize_vendor(customer_id, req.vendor_id, req.daily_limit, req.expiration_days)
        return result.to_dict()

    @router.post("/customers/{customer_id}/qr-code")
    def issue_qr_code(customer_id: str):
        bundle = service.issue_qr_bundle(customer_id)
        return {"bundle": bundle.to_dict(), "qr_text": bundle.to_json()}

    # -- grants ----------------------------------------------------------

    @router.get("/grants/callback")
    def grant_callback(
        identifier: str,
        interact_ref: Optional[str] = None,
        hash: Optional[str] = None,
        result: Optional[str] = None,
    ):
        record = service.complete_grant_authorization(identifier, interact_ref, hash, result)
        return {"grant": record.to_public_dict()}

    @router.get("/grants")
    def list_grants(customer_id: Optional[str] = None, status: Optional[CustomerGrantStatus] = None):
        if customer_id:
            grants = service.ledger.list_for_customer(customer_id, status=status)
        else:
            grants = [g for g in service.ledger.list_all() if status is None or g.status == status]
        return {"grants": [g.to_public_dict() for g in grants]}

    @router.get("/grants/{grant_id}")
    def get_grant(grant_id: str):
        return {"grant": service.ledger.get(grant_id).to_public_dict()}

    @router.post("/grants/{grant_id}/suspend")
    def suspend_grant(grant_id: str):
        return {"grant": service.suspend_grant(grant_id).to_public_dict()}

    @router.post("/grants/{grant_id}/payments", status_code=201)
    def grant_payment(grant_id: str, req: GrantPaymentRequest):
        return service.process_payment(grant_id, req.amount, req.description).to_dict()

    @router.post("/qr-code/verify")
    def verify_qr_code(req: VerifyBundleRequest):
        if req.bundle is not None:
            bundle = QRBundle.from_dict(req.bundle)
        elif req.qr_text:
            bundle = QRBundle.from_json(req.qr_text)
        else:
            raise ValidationError("Provide either bundle or qr_text")
        return service.verify_qr_bundle(bundle)

    return router


# ============================================================================
# Application
# ============================================================================


def create_app(service: PaperPayService) -> FastAPI:
    app = FastAPI(title="PaperPay", version="0.1.0")
    app.state.service = service
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "Authorization"],
    )
    app.include_router(_build_router(service))

    @app.exception_handler(PaperPayError)
    async def paperpay_error_handler(request: Request, exc: PaperPayError):
        status = status_for(exc)
        if isinstance(exc, DownstreamError):
            logger.error("Downstream failure on %s: %s (%s)", request.url.path, exc, exc.detail)
            message = f"{exc.operation} failed; retry the whole operation"
        else:
            logger.warning("%s on %s: %s", type(exc).__name__, request.url.path, exc)
            message = str(exc)
        content: dict[str, Any] = {"error": type(exc).__name__, "message": message}
        if isinstance(exc, LimitExceededError) and exc.remaining is not None:
            content["remaining"] = exc.remaining
        return JSONResponse(status_code=status, content=content)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        location = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"{location}: {first.get('msg', 'invalid request')}" if location else "Invalid request"
        return JSONResponse(status_code=400, content={"error": "ValidationError", "message": message})

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.error("Unexpected error on %s", request.url.path, exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={"error": "InternalError", "message": "An unexpected error occurred"},
        )

    return app
