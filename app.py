from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Union
from urllib.parse import quote

import httpx
import stripe
from fastapi import Depends, FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict
from pydantic_settings import BaseSettings
from sqlalchemy import Integer, String, create_engine, select
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from airtable import (
    AirtableClient,
    AirtableError,
    fetch_shop_pool,
    find_purchases,
    list_area_details,
    upsert_purchase,
)
from hearing import FunnelError, Plan, Preferences, parse_hearing
from selection import (
    Shop,
    allocate_connoisseur,
    allocate_explorer,
    assemble,
    ensure_inventory,
    seeded_shuffle,
)


# -----------------------------------------------------------------------------
# Settings (NO hardcoded secrets here)
# -----------------------------------------------------------------------------
class Settings(BaseSettings):
    APP_NAME: str = "Curated Shops API"
    ENVIRONMENT: str = "dev"

    ALLOWED_ORIGINS: str = "http://localhost:5173"
    # Public site root for Stripe redirects; derived from the request when empty
    BASE_URL: str = ""

    DATABASE_URL: str = "sqlite:///./app.db"

    # Airtable
    AIRTABLE_BASE_ID: str
    AIRTABLE_TOKEN: str
    AIRTABLE_PURCHASES_TABLE_ID: str
    AIRTABLE_SHOPS_TABLE_ID: str
    AIRTABLE_TIMEOUT_S: float = 5.0
    SHOPS_MAX_RECORDS: int = 200

    # Stripe
    STRIPE_SECRET_KEY: str
    STRIPE_WEBHOOK_SECRET: str
    STRIPE_PRICE_EXPLORER: str
    STRIPE_PRICE_CONNOISSEUR: str

    # GA4 Measurement Protocol (optional)
    GA4_MEASUREMENT_ID: str = ""
    GA4_API_SECRET: str = ""
    GA4_TIMEOUT_S: float = 4.0

    # Selection
    EXPLORER_TOTAL: int = 7
    CONNOISSEUR_TOTAL: int = 7
    FAIRNESS_CAP: int = 3

    # Rate limiting + bans
    RL_IP_RPS: float = 2.0
    RL_BURST: int = 12
    BAN_WINDOW_S: int = 600
    BAN_THRESHOLD: int = 5
    BAN_THRESHOLD_HARD: int = 10
    BAN_KIND_WEIGHTS: str = "webhook_fail=2,ratelimit=1"

    class Config:
        env_file = ".env"
        extra = "ignore"

    def allowed_origins_list(self) -> list[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",") if o.strip()]

    def price_for(self, plan: Plan) -> str:
        return self.STRIPE_PRICE_CONNOISSEUR if plan is Plan.CONNOISSEUR else self.STRIPE_PRICE_EXPLORER

    def required_total(self, plan: Plan) -> int:
        return self.CONNOISSEUR_TOTAL if plan is Plan.CONNOISSEUR else self.EXPLORER_TOTAL


settings = Settings()

# Logging
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
log = logging.getLogger("backend")


def jlog(event: str, **fields: Any) -> str:
    return json.dumps({"event": event, **fields}, ensure_ascii=False, separators=(",", ":"), default=str)


MISSING_SESSION_ID = "MISSING_SESSION_ID"
MISSING_PREF = "MISSING_PREF"
NOT_PAID = "NOT_PAID"
SERVER_ERROR = "SERVER_ERROR"


class NotPaid(FunnelError):
    status_code = 402

    def __init__(self):
        super().__init__(NOT_PAID)


# -----------------------------------------------------------------------------
# DB
# -----------------------------------------------------------------------------
class Base(DeclarativeBase):
    pass


class SecurityEvent(Base):
    __tablename__ = "security_event"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(String(160), index=True)
    kind: Mapped[str] = mapped_column(String(40), index=True)
    created_at: Mapped[int] = mapped_column(Integer, default=lambda: int(time.time()), index=True)


engine = create_engine(settings.DATABASE_URL, pool_pre_ping=True, future=True)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


def init_db() -> None:
    Base.metadata.create_all(bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# -----------------------------------------------------------------------------
# Middleware (rate limit/bans)
# -----------------------------------------------------------------------------
@dataclass
class Bucket:
    tokens: float
    last: float


_RL_IP: dict[str, Bucket] = {}


def _take_token(bucket_map: dict[str, Bucket], key: str, rps: float, burst: int) -> bool:
    now = time.time()
    b = bucket_map.get(key)
    if not b:
        bucket_map[key] = Bucket(tokens=float(burst - 1), last=now)
        return True
    elapsed = max(0.0, now - b.last)
    b.tokens = min(float(burst), b.tokens + elapsed * rps)
    b.last = now
    if b.tokens >= 1.0:
        b.tokens -= 1.0
        return True
    return False


def _ban_weights() -> dict[str, int]:
    out: dict[str, int] = {}
    for pair in settings.BAN_KIND_WEIGHTS.split(","):
        pair = pair.strip()
        if not pair or "=" not in pair:
            continue
        k, v = pair.split("=", 1)
        out[k.strip()] = int(v.strip())
    return out


BAN_WEIGHTS = _ban_weights()


def security_event(db: Session, key: str, kind: str) -> None:
    db.add(SecurityEvent(key=key, kind=kind))
    db.commit()


def ban_score(db: Session, key: str) -> int:
    cutoff = int(time.time()) - settings.BAN_WINDOW_S
    rows = db.execute(select(SecurityEvent.kind).where(SecurityEvent.key == key, SecurityEvent.created_at >= cutoff)).all()
    score = 0
    for (kind,) in rows:
        score += BAN_WEIGHTS.get(kind, 1)
    return score


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


class BanAndRateLimitMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        ip = client_ip(request)

        with SessionLocal() as db:
            score = ban_score(db, f"ip:{ip}")
            if score >= settings.BAN_THRESHOLD_HARD:
                return JSONResponse(status_code=403, content={"ok": False, "error": "BLOCKED"})
            if score >= settings.BAN_THRESHOLD:
                return JSONResponse(status_code=403, content={"ok": False, "error": "TEMPORARILY_BLOCKED"})

        if not _take_token(_RL_IP, ip, settings.RL_IP_RPS, settings.RL_BURST):
            with SessionLocal() as db:
                security_event(db, f"ip:{ip}", "ratelimit")
            return JSONResponse(status_code=429, content={"ok": False, "error": "RATE_LIMITED"})

        return await call_next(request)


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        request.state.request_id = rid
        resp: Response = await call_next(request)
        resp.headers["X-Request-Id"] = rid
        return resp


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            rid = getattr(request.state, "request_id", None)
            log.exception(jlog("unhandled_error", request_id=rid, path=request.url.path, err=str(e)))
            return JSONResponse(status_code=500, content={"ok": False, "error": SERVER_ERROR, "request_id": rid})


# -----------------------------------------------------------------------------
# Stripe
# -----------------------------------------------------------------------------
class StripePayments:
    """Checkout + webhook access with the API key passed per call."""

    def __init__(self, api_key: str, webhook_secret: str):
        self.api_key = api_key
        self.webhook_secret = webhook_secret

    def create_checkout_session(
        self, *, price_id: str, success_url: str, cancel_url: str, metadata: dict[str, str]
    ) -> stripe.checkout.Session:
        return stripe.checkout.Session.create(
            api_key=self.api_key,
            mode="payment",
            success_url=success_url,
            cancel_url=cancel_url,
            billing_address_collection="auto",
            line_items=[{"price": price_id, "quantity": 1}],
            metadata=metadata,
        )

    def retrieve_checkout_session(self, session_id: str) -> stripe.checkout.Session:
        return stripe.checkout.Session.retrieve(session_id, api_key=self.api_key, expand=["line_items"])

    def construct_event(self, payload: bytes, sig_header: str) -> stripe.Event:
        return stripe.Webhook.construct_event(payload=payload, sig_header=sig_header, secret=self.webhook_secret)


PAID_STATUSES = {"paid", "succeeded", "success", "complete", "completed"}
UNPAID_STATUSES = {"unpaid", "open", "pending", "failed", "canceled", "cancelled", "requires_payment_method"}


def normalize_payment_status(status: Any) -> str:
    s = str(status or "").strip().lower()
    if s in PAID_STATUSES:
        return "paid"
    if s in UNPAID_STATUSES:
        return "unpaid"
    return s or "unknown"


def session_is_paid(session: Mapping[str, Any]) -> bool:
    return (
        normalize_payment_status(session.get("payment_status")) == "paid"
        or str(session.get("status") or "").lower() == "complete"
    )


def infer_plan(session: Mapping[str, Any]) -> str:
    md = session.get("metadata") or {}
    if md.get("plan"):
        return str(md["plan"]).strip().lower()
    line_items = session.get("line_items") or {}
    for item in line_items.get("data") or []:
        pid = (item.get("price") or {}).get("id")
        if pid and pid == settings.STRIPE_PRICE_EXPLORER:
            return Plan.EXPLORER.value
        if pid and pid == settings.STRIPE_PRICE_CONNOISSEUR:
            return Plan.CONNOISSEUR.value
    return ""


def display_plan(plan: str) -> str:
    try:
        return Plan(plan).display
    except ValueError:
        return plan


def purchase_fields(session: Mapping[str, Any], payment_status: Optional[str] = None) -> dict[str, Any]:
    """Purchase row for a checkout session; shared by the webhook and self-heal paths."""
    md = session.get("metadata") or {}
    created = session.get("created")
    created_at = datetime.fromtimestamp(created, tz=timezone.utc) if created else datetime.now(timezone.utc)
    amount = session.get("amount_total")
    return {
        "payment_status": payment_status or str(session.get("payment_status") or "unpaid"),
        "amount_total": amount if isinstance(amount, int) else 0,
        "currency": str(session.get("currency") or ""),
        "plan": display_plan(infer_plan(session)),
        "created_at": created_at.isoformat(),
        "customer_email": (session.get("customer_details") or {}).get("email") or session.get("customer_email") or "",
        "area_groups": str(md.get("area_groups") or ""),
        "who": str(md.get("who") or ""),
        "vibes": str(md.get("vibes") or ""),
        "no_preference": str(md.get("no_preference") or "false"),
        "hearing": str(md.get("hearing") or ""),
        "ga_client_id": str(md.get("ga_client_id") or ""),
    }


# -----------------------------------------------------------------------------
# GA4 purchase event
# -----------------------------------------------------------------------------
GA4_ENDPOINT = "https://www.google-analytics.com/mp/collect"


async def send_ga4_purchase(client_id: str, session_id: str, amount_total: int, currency: str, plan: str) -> None:
    value = amount_total / 100 if amount_total else 0
    payload = {
        "client_id": client_id,
        "events": [
            {
                "name": "purchase",
                "params": {
                    "transaction_id": session_id,
                    "currency": (currency or "usd").upper(),
                    "value": value,
                    "items": [{"item_id": plan or "plan", "item_name": plan or "Plan", "price": value, "quantity": 1}],
                },
            }
        ],
    }
    params = {"measurement_id": settings.GA4_MEASUREMENT_ID, "api_secret": settings.GA4_API_SECRET}
    async with httpx.AsyncClient(timeout=httpx.Timeout(settings.GA4_TIMEOUT_S)) as client:
        r = await client.post(GA4_ENDPOINT, params=params, json=payload)
        r.raise_for_status()


def ga4_enabled() -> bool:
    return bool(settings.GA4_MEASUREMENT_ID and settings.GA4_API_SECRET)


# -----------------------------------------------------------------------------
# Dependencies
# -----------------------------------------------------------------------------
def get_airtable(request: Request) -> AirtableClient:
    return request.app.state.airtable


def get_payments(request: Request) -> StripePayments:
    return request.app.state.payments


def site_base_url(request: Request) -> str:
    if settings.BASE_URL:
        return settings.BASE_URL.rstrip("/")
    proto = (request.headers.get("x-forwarded-proto") or "").split(",")[0].strip() or request.url.scheme
    host = request.headers.get("x-forwarded-host") or request.headers.get("host") or request.url.netloc
    return f"{proto}://{host}".rstrip("/")


# -----------------------------------------------------------------------------
# Results flow
# -----------------------------------------------------------------------------
async def load_paid_purchase(
    airtable: AirtableClient, payments: StripePayments, session_id: str, request_id: Optional[str]
) -> Mapping[str, Any]:
    """Purchase fields for a paid session: datastore first, Stripe as fallback."""
    table = settings.AIRTABLE_PURCHASES_TABLE_ID
    records = await find_purchases(airtable, table, session_id)
    if records:
        fields = records[0].get("fields") or {}
        if normalize_payment_status(fields.get("payment_status")) != "paid":
            raise NotPaid()
        return fields

    try:
        session = await run_in_threadpool(payments.retrieve_checkout_session, session_id)
    except stripe.InvalidRequestError as e:
        log.info(jlog("stripe_session_not_found", request_id=request_id, session_id=session_id, err=str(e)))
        raise NotPaid() from e
    if not session_is_paid(session):
        raise NotPaid()

    fields = purchase_fields(session, payment_status="paid")
    try:
        await upsert_purchase(airtable, table, session_id, fields)
    except (AirtableError, httpx.HTTPError) as e:
        log.warning(jlog("purchase_self_heal_failed", request_id=request_id, session_id=session_id, err=str(e)))
    return fields


async def select_shops(airtable: AirtableClient, prefs: Preferences, seed: str) -> list[dict[str, Any]]:
    table = settings.AIRTABLE_SHOPS_TABLE_ID
    tasks = [
        asyncio.ensure_future(fetch_shop_pool(airtable, table, area, settings.SHOPS_MAX_RECORDS))
        for area in prefs.area_groups
    ]
    try:
        results = await asyncio.gather(*tasks)
    except BaseException:
        # first failure wins; stop the sibling queries
        for t in tasks:
            t.cancel()
        raise
    pools = {
        area: seeded_shuffle([Shop.from_record(r) for r in records], f"{seed}:{area}")
        for area, records in zip(prefs.area_groups, results)
    }

    required = settings.required_total(prefs.plan)
    if prefs.plan is Plan.EXPLORER:
        picks = allocate_explorer(pools[prefs.area_groups[0]], prefs, target=required)
    else:
        picks = allocate_connoisseur(pools, prefs, target=required, fairness_cap=settings.FAIRNESS_CAP)
    ensure_inventory(picks, required)
    return assemble(picks, prefs)


# -----------------------------------------------------------------------------
# API models
# -----------------------------------------------------------------------------
class CheckoutRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    plan: str = ""
    area_groups: Optional[Union[list[str], str]] = None
    who: Optional[str] = None
    vibes: Optional[Union[list[str], str]] = None
    no_preference: Optional[bool] = None
    ga_client_id: Optional[str] = None


class CheckoutResponse(BaseModel):
    ok: bool = True
    url: str
    id: str


# -----------------------------------------------------------------------------
# FastAPI app
# -----------------------------------------------------------------------------
app = FastAPI(title=settings.APP_NAME)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(RequestIdMiddleware)
app.add_middleware(BanAndRateLimitMiddleware)
app.add_middleware(ErrorHandlerMiddleware)


@app.exception_handler(FunnelError)
async def funnel_error_handler(request: Request, exc: FunnelError):
    rid = getattr(request.state, "request_id", None)
    log.info(jlog("request_rejected", request_id=rid, path=request.url.path, error=exc.code))
    return JSONResponse(status_code=exc.status_code, content={"ok": False, "error": exc.code})


@app.on_event("startup")
def startup():
    init_db()
    app.state.airtable = AirtableClient(
        base_id=settings.AIRTABLE_BASE_ID,
        token=settings.AIRTABLE_TOKEN,
        timeout_s=settings.AIRTABLE_TIMEOUT_S,
    )
    app.state.payments = StripePayments(api_key=settings.STRIPE_SECRET_KEY, webhook_secret=settings.STRIPE_WEBHOOK_SECRET)
    log.info(jlog("startup", env=settings.ENVIRONMENT, db=settings.DATABASE_URL, allowed_origins=settings.allowed_origins_list()))


@app.on_event("shutdown")
async def shutdown():
    await app.state.airtable.aclose()


@app.get("/")
def root():
    return {
        "ok": True,
        "service": "curated-shops",
        "hint": "Try /docs, /api/v1/health",
    }


@app.get("/api/v1/health")
def health():
    return {"ok": True}


@app.post("/api/checkout", response_model=CheckoutResponse)
async def checkout(req: CheckoutRequest, request: Request, payments: StripePayments = Depends(get_payments)):
    prefs = parse_hearing(req.model_dump(exclude_none=True))

    metadata = prefs.to_metadata()
    if req.ga_client_id:
        metadata["ga_client_id"] = req.ga_client_id

    base = site_base_url(request)
    plan = quote(prefs.plan.value)
    session = await run_in_threadpool(
        payments.create_checkout_session,
        price_id=settings.price_for(prefs.plan),
        success_url=f"{base}/results.html?session_id={{CHECKOUT_SESSION_ID}}&plan={plan}",
        cancel_url=f"{base}/hearing.html?plan={plan}",
        metadata=metadata,
    )
    if not session.url:
        raise FunnelError(SERVER_ERROR, status_code=502)

    log.info(jlog("checkout_created", session_id=session.id, plan=prefs.plan.value, areas=list(prefs.area_groups)))
    return CheckoutResponse(url=session.url, id=session.id)


@app.post("/api/stripe/webhook")
async def stripe_webhook(
    request: Request,
    payments: StripePayments = Depends(get_payments),
    airtable: AirtableClient = Depends(get_airtable),
    db: Session = Depends(get_db),
):
    payload = await request.body()
    sig = request.headers.get("stripe-signature", "")
    if not sig:
        return JSONResponse(status_code=400, content={"ok": False, "error": "MISSING_SIGNATURE"})

    try:
        event = payments.construct_event(payload, sig)
    except (ValueError, stripe.SignatureVerificationError) as e:
        security_event(db, f"ip:{client_ip(request)}", "webhook_fail")
        log.warning(jlog("stripe_webhook_invalid", err=str(e)))
        return JSONResponse(status_code=400, content={"ok": False, "error": "INVALID_SIGNATURE"})

    if event["type"] != "checkout.session.completed":
        return {"received": True}

    session = event["data"]["object"]
    session_id = session.get("id")
    if not session_id or not isinstance(session_id, str):
        log.error(jlog("stripe_webhook_missing_session_id", event_id=event.get("id")))
        return {"received": True}

    fields = purchase_fields(session)
    try:
        await upsert_purchase(airtable, settings.AIRTABLE_PURCHASES_TABLE_ID, session_id, fields)
    except (AirtableError, httpx.HTTPError) as e:
        # non-2xx makes Stripe redeliver
        log.error(jlog("purchase_upsert_failed", session_id=session_id, err=str(e)))
        return JSONResponse(status_code=500, content={"ok": False, "error": SERVER_ERROR})

    client_id = fields["ga_client_id"]
    if ga4_enabled() and client_id:
        try:
            await send_ga4_purchase(client_id, session_id, fields["amount_total"], fields["currency"], fields["plan"])
        except httpx.HTTPError as e:
            log.warning(jlog("ga4_purchase_failed", session_id=session_id, err=str(e)))
    elif ga4_enabled():
        log.info(jlog("ga4_purchase_skipped", session_id=session_id, reason="missing_client_id"))

    log.info(jlog("stripe_checkout_completed", session_id=session_id, plan=fields["plan"], payment_status=fields["payment_status"]))
    return {"received": True}


@app.get("/api/results")
async def results(
    request: Request,
    response: Response,
    session_id: str = "",
    airtable: AirtableClient = Depends(get_airtable),
    payments: StripePayments = Depends(get_payments),
):
    rid = getattr(request.state, "request_id", None) or str(uuid.uuid4())
    response.headers["Cache-Control"] = "no-store"

    session_id = session_id.strip()
    if not session_id:
        raise FunnelError(MISSING_SESSION_ID)

    fields = await load_paid_purchase(airtable, payments, session_id, rid)
    prefs = parse_hearing(fields)
    shops = await select_shops(airtable, prefs, seed=session_id)

    log.info(jlog("results_served", request_id=rid, session_id=session_id, plan=prefs.plan.value, count=len(shops)))
    return {"ok": True, "plan": prefs.plan.value, "who": prefs.who, "shops": shops}


@app.get("/api/areas")
async def areas(pref: str = "", airtable: AirtableClient = Depends(get_airtable)):
    pref = pref.strip()
    if not pref:
        raise FunnelError(MISSING_PREF)
    details = await list_area_details(airtable, settings.AIRTABLE_SHOPS_TABLE_ID, pref)
    return {"ok": True, "pref": pref, "count": len(details), "areaDetails": details}
