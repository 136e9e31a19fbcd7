import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

import checkout_engine
import referral_engine
import wallet_ledger
from checkout_engine import IncentiveSelection
from config import get_settings
from db.repositories import open_repositories
from errors import ConcurrentUpdate, InvalidState, NotFound, PromotionError, StorageError
from models import OfferValidationResult, Order, OrderTotalBreakdown, Referral, WalletTransaction
from offer_engine import validate_festival_promo, validate_referral_wallet, validate_welcome_offer
from stores import Repositories

settings = get_settings()

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.APP_NAME, version=settings.APP_VERSION)

# CORS middleware to allow frontend to call the API
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_repositories():
    """one PostgreSQL connection per request. tests override this."""
    with open_repositories() as repos:
        yield repos


# ---------
# error mapping
# ---------

@app.exception_handler(PromotionError)
def promotion_error_handler(request: Request, exc: PromotionError):
    if isinstance(exc, NotFound):
        status_code = 404
    elif isinstance(exc, InvalidState):
        status_code = 409
    else:
        status_code = 400
    return JSONResponse(status_code=status_code, content=exc.to_dict())


@app.exception_handler(StorageError)
def storage_error_handler(request: Request, exc: StorageError):
    if isinstance(exc, ConcurrentUpdate):
        return JSONResponse(status_code=409, content={"code": exc.code, "detail": str(exc)})
    logger.error("storage error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=503,
        content={"code": exc.code, "detail": "Service temporarily unavailable"},
    )


@app.exception_handler(Exception)
def unhandled_error_handler(request: Request, exc: Exception):
    logger.error("unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# ---------
# pydantic models (requests)
# ---------

class WelcomeOfferRequest(BaseModel):
    customer_id: str
    order_value: Decimal = Field(..., ge=0)


class WalletOfferRequest(BaseModel):
    customer_id: str
    order_value: Decimal = Field(..., ge=0)
    wallet_amount: Optional[Decimal] = Field(None, ge=0, description="Amount the customer wants to use")


class PromoOfferRequest(BaseModel):
    customer_id: str
    promo_code: str
    order_value: Decimal = Field(..., ge=0)
    wallet_selected: bool = False


class CheckoutRequest(BaseModel):
    customer_id: Optional[str] = Field(None, description="Required when placing the order")
    subtotal: Decimal = Field(..., ge=0, description="Cart value before fees")
    apply_welcome: bool = False
    promo_code: Optional[str] = None
    wallet_amount: Decimal = Field(Decimal("0"), ge=0)
    order_id: Optional[str] = Field(None, description="Client supplied id, generated if omitted")

    def selection(self) -> IncentiveSelection:
        return IncentiveSelection(
            apply_welcome=self.apply_welcome,
            promo_code=self.promo_code,
            wallet_amount=self.wallet_amount,
        )


class OrderDeliveredWebhookRequest(BaseModel):
    order_id: str


class ReferralGenerateRequest(BaseModel):
    user_id: str = Field(..., description="User ID to generate or fetch referral code for")


class ReferralRegisterRequest(BaseModel):
    referred_user_id: str = Field(..., description="ID of the user being referred")
    referral_code: str = Field(..., description="Referral code used on signup")
    device_id: Optional[str] = None


# ---------
# serialization helpers (decimals go out as 2-place strings)
# ---------

def _money(value: Decimal) -> str:
    return f"{value:.2f}"


def _validation_json(result: OfferValidationResult) -> Dict[str, Any]:
    return {
        "eligible": result.eligible,
        "discount": _money(result.discount),
        "usable_amount": _money(result.usable_amount),
        "reason": result.reason,
        "code": result.error.code if result.error is not None else None,
    }


def _breakdown_json(b: OrderTotalBreakdown) -> Dict[str, Any]:
    return {
        "subtotal": _money(b.subtotal),
        "handling_fee": _money(b.fees.handling_fee),
        "delivery_fee": _money(b.fees.delivery_fee),
        "rain_fee": _money(b.fees.rain_fee),
        "tax_amount": _money(b.fees.tax_amount),
        "offer_type": b.offer_type.value,
        "welcome_offer_discount": _money(b.welcome_offer_discount),
        "promo_discount": _money(b.promo_discount),
        "wallet_amount_used": _money(b.wallet_amount_used),
        "total_savings": _money(b.total_savings),
        "final_total": _money(b.final_total),
    }


def _order_json(order: Order) -> Dict[str, Any]:
    return {
        "order_id": order.id,
        "user_id": order.user_id,
        "status": order.status.value,
        "offer_type": order.offer_type.value,
        "subtotal": _money(order.subtotal),
        "welcome_offer_discount": _money(order.welcome_offer_discount),
        "promo_discount": _money(order.promo_discount),
        "wallet_amount_used": _money(order.wallet_amount_used),
        "final_total": _money(order.final_total),
        "created_at": order.created_at.isoformat(),
        "delivered_at": order.delivered_at.isoformat() if order.delivered_at else None,
    }


def _referral_json(r: Referral) -> Dict[str, Any]:
    return {
        "referral_id": r.id,
        "referrer_user_id": r.referrer_user_id,
        "referred_user_id": r.referred_user_id,
        "status": r.status.value,
        "reward_amount": _money(r.reward_amount),
        "order_id": r.order_id,
        "created_at": r.created_at.isoformat(),
        "expires_at": r.expires_at.isoformat() if r.expires_at else None,
        "credited_at": r.credited_at.isoformat() if r.credited_at else None,
    }


def _transaction_json(t: WalletTransaction) -> Dict[str, Any]:
    return {
        "id": t.id,
        "type": t.type.value,
        "amount": _money(t.amount),
        "balance_before": _money(t.balance_before),
        "balance_after": _money(t.balance_after),
        "description": t.description,
        "order_id": t.order_id,
        "created_at": t.created_at.isoformat(),
    }


# ---------
# endpoints: offer validation
# ---------

@app.post("/api/offers/welcome/validate")
def offers_welcome_validate(payload: WelcomeOfferRequest, repos: Repositories = Depends(get_repositories)):
    result = validate_welcome_offer(repos, payload.customer_id, payload.order_value)
    return _validation_json(result)


@app.post("/api/offers/wallet/validate")
def offers_wallet_validate(payload: WalletOfferRequest, repos: Repositories = Depends(get_repositories)):
    result = validate_referral_wallet(
        repos,
        payload.customer_id,
        payload.order_value,
        requested_amount=payload.wallet_amount,
    )
    return _validation_json(result)


@app.post("/api/offers/promo/validate")
def offers_promo_validate(payload: PromoOfferRequest, repos: Repositories = Depends(get_repositories)):
    result = validate_festival_promo(
        repos,
        payload.customer_id,
        payload.promo_code,
        payload.order_value,
        wallet_selected=payload.wallet_selected,
    )
    return _validation_json(result)


# ---------
# endpoints: checkout / orders
# ---------

@app.post("/api/checkout/preview")
def checkout_preview(payload: CheckoutRequest, repos: Repositories = Depends(get_repositories)):
    """
    price the cart. with a customer_id the checkout is also validated and
    the errors/warnings come back next to the numbers; nothing is written.
    """
    selection = payload.selection()
    breakdown = checkout_engine.preview_checkout(repos, payload.subtotal, selection)
    response = {"breakdown": _breakdown_json(breakdown)}

    if payload.customer_id is not None:
        validation = checkout_engine.validate_checkout(
            repos, payload.customer_id, payload.subtotal, selection
        )
        response["valid"] = validation.is_valid
        response["errors"] = [e.to_dict() for e in validation.errors]
        response["warnings"] = validation.warnings

    return response


@app.post("/api/checkout/place")
def checkout_place(payload: CheckoutRequest, repos: Repositories = Depends(get_repositories)):
    if payload.customer_id is None:
        raise HTTPException(status_code=400, detail="customer_id is required to place an order")

    order = checkout_engine.place_order(
        repos,
        payload.customer_id,
        payload.subtotal,
        payload.selection(),
        order_id=payload.order_id,
    )
    return _order_json(order)


@app.post("/api/orders/{order_id}/cancel")
def order_cancel(order_id: str, repos: Repositories = Depends(get_repositories)):
    order = checkout_engine.cancel_order(repos, order_id)
    return _order_json(order)


@app.post("/api/webhook/order-delivered")
def webhook_order_delivered(payload: OrderDeliveredWebhookRequest,
                            repos: Repositories = Depends(get_repositories)):
    """
    order delivery webhook. safe to redeliver: a second call for the same
    order reports `noop` and credits nothing.
    """
    order, outcome = checkout_engine.mark_order_delivered(repos, payload.order_id)
    return {
        "order": _order_json(order),
        "reward": {
            "status": outcome.status.value,
            "referral_id": outcome.referral_id,
            "reason": outcome.reason,
            "transaction_id": outcome.transaction_id,
        },
    }


# ---------
# endpoints: referrals / wallet
# ---------

@app.post("/api/referral/generate")
def referral_generate(payload: ReferralGenerateRequest, repos: Repositories = Depends(get_repositories)):
    """
    return the user's referral code, generating one if they don't have it yet.
    """
    with repos.transaction():
        code = referral_engine.get_or_generate_referral_code(repos, payload.user_id)
    return {"user_id": payload.user_id, "referral_code": code}


@app.post("/api/referral/register")
def referral_register(payload: ReferralRegisterRequest, repos: Repositories = Depends(get_repositories)):
    """
    attach a referred user to a referrer using a referral_code.
    """
    referral = referral_engine.register_referral(
        repos,
        payload.referred_user_id,
        payload.referral_code,
        device_id=payload.device_id,
    )
    return _referral_json(referral)


@app.get("/api/referral/summary")
def referral_summary(
    user_id: str = Query(..., description="Referrer whose referrals we want"),
    repos: Repositories = Depends(get_repositories),
):
    summary = referral_engine.referral_summary(repos, user_id)
    return {
        "user_id": summary["user_id"],
        "referral_code": summary["referral_code"],
        "referral_count": summary["referral_count"],
        "total_earnings": _money(summary["total_earnings"]),
        "by_status": summary["by_status"],
        "referrals": [_referral_json(r) for r in summary["referrals"]],
    }


@app.get("/api/wallet")
def wallet(
    user_id: str = Query(..., description="Wallet owner"),
    limit: int = Query(20, ge=1, le=200, description="Max number of transactions to return"),
    repos: Repositories = Depends(get_repositories),
):
    summary = wallet_ledger.wallet_summary(repos, user_id, limit=limit)
    return {
        "user_id": user_id,
        "balance": _money(summary["balance"]),
        "transactions": [_transaction_json(t) for t in summary["transactions"]],
    }


@app.post("/api/referral/expire")
def referral_expire(repos: Repositories = Depends(get_repositories)):
    """maintenance: expire every referral past its expiry date."""
    expired = referral_engine.expire_stale_referrals(repos)
    return {"expired": expired, "count": len(expired)}
