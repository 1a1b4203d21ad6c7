"""Shared fixtures for the curated shops test suite.

Settings are read at import time, so the environment is pinned here before
``app`` is imported. Airtable is served by an in-memory stub behind
``httpx.MockTransport`` so the real client code runs; Stripe is replaced by a
fake gateway through FastAPI dependency overrides.
"""

import json
import os
import re
import sys
import tempfile
from pathlib import Path
from types import SimpleNamespace

import httpx
import pytest
import stripe

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

_TMP = tempfile.mkdtemp(prefix="curated-shops-tests-")

os.environ.update(
    {
        "AIRTABLE_BASE_ID": "appTEST",
        "AIRTABLE_TOKEN": "patTEST",
        "AIRTABLE_PURCHASES_TABLE_ID": "tblPurchases",
        "AIRTABLE_SHOPS_TABLE_ID": "tblShops",
        "STRIPE_SECRET_KEY": "sk_test_dummy",
        "STRIPE_WEBHOOK_SECRET": "whsec_dummy",
        "STRIPE_PRICE_EXPLORER": "price_explorer",
        "STRIPE_PRICE_CONNOISSEUR": "price_connoisseur",
        "BASE_URL": "https://shops.example",
        "DATABASE_URL": f"sqlite:///{_TMP}/test.db",
        "GA4_MEASUREMENT_ID": "",
        "GA4_API_SECRET": "",
        "RL_BURST": "100000",
        "BAN_THRESHOLD": "100000",
        "BAN_THRESHOLD_HARD": "200000",
    }
)

from fastapi.testclient import TestClient  # noqa: E402

import app as app_module  # noqa: E402
from airtable import AirtableClient  # noqa: E402
from hearing import Plan, Preferences  # noqa: E402
from selection import Shop  # noqa: E402

PURCHASES = "tblPurchases"
SHOPS = "tblShops"
VALID_SIG = "t=1,v1=valid"


# =============================================================================
# AIRTABLE STUB
# =============================================================================

EQ_RE = re.compile(r"\{(\w+)\}='((?:[^'\\]|\\.)*)'")
FIND_RE = re.compile(r"FIND\('((?:[^'\\]|\\.)*)',\{(\w+)\}\)>0")


def _unescape(s):
    return re.sub(r"\\(.)", r"\1", s)


def _formula_matches(fields, formula):
    """Evaluates the AND-of-equalities / FIND formulas this service emits."""
    if not formula:
        return True
    for name, value in EQ_RE.findall(formula):
        if str(fields.get(name, "")) != _unescape(value):
            return False
    for value, name in FIND_RE.findall(formula):
        if _unescape(value) not in str(fields.get(name, "")):
            return False
    return True


class AirtableStub:
    def __init__(self):
        self.tables = {}
        self.requests = []
        self.fail_tables = set()
        self._seq = 0

    def add(self, table, fields, record_id=None):
        self._seq += 1
        rec = {
            "id": record_id or f"rec{self._seq:05d}",
            "createdTime": "2026-01-01T00:00:00.000Z",
            "fields": dict(fields),
        }
        self.tables.setdefault(table, []).append(rec)
        return rec

    def rows(self, table):
        return [r["fields"] for r in self.tables.get(table, [])]

    def requests_for(self, table, method=None):
        return [
            r for r in self.requests
            if r.url.path.split("/")[3] == table and (method is None or r.method == method)
        ]

    def handler(self, request):
        self.requests.append(request)
        parts = request.url.path.split("/")
        table = parts[3]
        record_id = parts[4] if len(parts) > 4 else None

        if table in self.fail_tables:
            return httpx.Response(500, json={"error": {"type": "SERVER_ERROR", "message": "upstream exploded"}})

        rows = self.tables.setdefault(table, [])
        params = request.url.params

        if request.method == "GET":
            matched = [r for r in rows if _formula_matches(r["fields"], params.get("filterByFormula"))]
            max_records = int(params.get("maxRecords") or 0)
            if max_records:
                matched = matched[:max_records]
            page_size = int(params.get("pageSize") or 100)
            start = int(params.get("offset") or 0)
            body = {"records": matched[start:start + page_size]}
            if start + page_size < len(matched):
                body["offset"] = str(start + page_size)
            return httpx.Response(200, json=body)

        if request.method == "POST":
            payload = json.loads(request.content)
            created = [self.add(table, r["fields"]) for r in payload["records"]]
            return httpx.Response(200, json={"records": created})

        rec = next((r for r in rows if r["id"] == record_id), None)
        if rec is None:
            return httpx.Response(404, json={"error": "NOT_FOUND"})
        if request.method == "PATCH":
            rec["fields"].update(json.loads(request.content)["fields"])
            return httpx.Response(200, json=rec)
        if request.method == "DELETE":
            rows.remove(rec)
            return httpx.Response(200, json={"id": record_id, "deleted": True})
        return httpx.Response(405, json={"error": "METHOD_NOT_ALLOWED"})


# =============================================================================
# STRIPE FAKE
# =============================================================================

class FakePayments:
    def __init__(self):
        self.sessions = {}
        self.created = []
        self.retrieved = []

    def create_checkout_session(self, **kwargs):
        self.created.append(kwargs)
        sid = f"cs_test_{len(self.created)}"
        return SimpleNamespace(id=sid, url=f"https://checkout.stripe.test/c/pay/{sid}")

    def retrieve_checkout_session(self, session_id):
        self.retrieved.append(session_id)
        if session_id not in self.sessions:
            raise stripe.InvalidRequestError(f"No such checkout.session: '{session_id}'", "id")
        return self.sessions[session_id]

    def construct_event(self, payload, sig_header):
        if sig_header != VALID_SIG:
            raise stripe.SignatureVerificationError("No signatures found matching the expected signature", sig_header)
        return json.loads(payload)


# =============================================================================
# DATA BUILDERS
# =============================================================================

def shop_fields(shop_id, area, who=(), vibes=(), status="active", name=None):
    return {
        "shop_id": shop_id,
        "shop_name": name if name is not None else f"Shop {shop_id}",
        "area_group": area,
        "area_detail": f"{area} / Central",
        "status": status,
        "best_with": list(who),
        "best_vibe": list(vibes),
        "genre": "cafe",
        "short_desc": f"Short description of {shop_id}",
    }


def purchase_row(session_id, plan="Explorer", areas="Tokyo Urban", who="solo", vibes="quiet_reflective",
                 payment_status="paid", **extra):
    return {
        "session_id": session_id,
        "payment_status": payment_status,
        "plan": plan,
        "area_groups": areas,
        "who": who,
        "vibes": vibes,
        **extra,
    }


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def make_shop():
    def _make(shop_id, area="Tokyo Urban", who=(), vibes=(), status="active", name=None):
        return Shop.from_record(shop_fields(shop_id, area, who, vibes, status, name))
    return _make


@pytest.fixture
def explorer_prefs():
    return Preferences(
        plan=Plan.EXPLORER,
        area_groups=("Tokyo Urban",),
        who="solo",
        vibes=("quiet_reflective",),
        no_preference=False,
    )


@pytest.fixture
def connoisseur_prefs():
    return Preferences(
        plan=Plan.CONNOISSEUR,
        area_groups=("Tokyo Urban", "Kyoto Classic", "Osaka Street", "Nara Quiet"),
        who="partner",
        vibes=("romantic",),
    )


@pytest.fixture
def airtable_stub():
    return AirtableStub()


@pytest.fixture
def airtable(airtable_stub):
    return AirtableClient("appTEST", "patTEST", transport=httpx.MockTransport(airtable_stub.handler))


@pytest.fixture
def payments():
    return FakePayments()


@pytest.fixture
def client(airtable, payments):
    application = app_module.app
    with TestClient(application) as c:
        application.dependency_overrides[app_module.get_airtable] = lambda: airtable
        application.dependency_overrides[app_module.get_payments] = lambda: payments
        yield c
        application.dependency_overrides.clear()
