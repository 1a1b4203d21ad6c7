from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

AIRTABLE_API = "https://api.airtable.com/v0"

log = logging.getLogger("backend.airtable")


class AirtableError(Exception):
    def __init__(self, status: int, message: str):
        super().__init__(f"Airtable error ({status}): {message}")
        self.status = status
        self.message = message


def escape_formula_value(value: Any) -> str:
    return str(value).replace("\\", "\\\\").replace("'", "\\'")


# -----------------------------------------------------------------------------
# REST client
# -----------------------------------------------------------------------------
class AirtableClient:
    """Thin async wrapper over the Airtable REST API for one base.

    One instance per process, created at startup and handed to routes through a
    dependency. ``transport`` lets tests swap in ``httpx.MockTransport``.
    """

    def __init__(
        self,
        base_id: str,
        token: str,
        timeout_s: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_id = base_id
        self._client = httpx.AsyncClient(
            base_url=f"{AIRTABLE_API}/{base_id}",
            headers={"Authorization": f"Bearer {token}"},
            timeout=httpx.Timeout(timeout_s, connect=min(timeout_s, 3.0)),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        r = await self._client.request(method, path, **kwargs)
        try:
            data = r.json() if r.content else {}
        except ValueError:
            data = {}
        if r.is_error:
            err = data.get("error") if isinstance(data, dict) else None
            if isinstance(err, dict):
                msg = err.get("message") or err.get("type") or r.reason_phrase
            else:
                msg = str(err or r.reason_phrase)
            raise AirtableError(r.status_code, msg)
        if not isinstance(data, dict):
            raise AirtableError(r.status_code, "Malformed response")
        return data

    async def list_records(
        self,
        table: str,
        *,
        formula: Optional[str] = None,
        max_records: Optional[int] = None,
        page_size: int = 100,
        fields: Optional[list[str]] = None,
    ) -> list[dict[str, Any]]:
        params: list[tuple[str, str]] = [("pageSize", str(page_size))]
        if formula:
            params.append(("filterByFormula", formula))
        if max_records:
            params.append(("maxRecords", str(max_records)))
        for f in fields or []:
            params.append(("fields[]", f))

        records: list[dict[str, Any]] = []
        offset: Optional[str] = None
        while True:
            page = params + ([("offset", offset)] if offset else [])
            data = await self._request("GET", f"/{table}", params=page)
            records.extend(data.get("records") or [])
            offset = data.get("offset")
            if not offset or (max_records and len(records) >= max_records):
                break
        return records[:max_records] if max_records else records

    async def create_record(self, table: str, fields: dict[str, Any]) -> dict[str, Any]:
        data = await self._request("POST", f"/{table}", json={"records": [{"fields": fields}], "typecast": True})
        records = data.get("records") or []
        return records[0] if records else {}

    async def update_record(self, table: str, record_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        return await self._request("PATCH", f"/{table}/{record_id}", json={"fields": fields, "typecast": True})

    async def delete_record(self, table: str, record_id: str) -> dict[str, Any]:
        return await self._request("DELETE", f"/{table}/{record_id}")


# -----------------------------------------------------------------------------
# Purchases
# -----------------------------------------------------------------------------
async def find_purchases(client: AirtableClient, table: str, session_id: str) -> list[dict[str, Any]]:
    formula = f"{{session_id}}='{escape_formula_value(session_id)}'"
    return await client.list_records(table, formula=formula, max_records=10)


async def upsert_purchase(
    client: AirtableClient, table: str, session_id: str, fields: dict[str, Any]
) -> dict[str, Any]:
    """Keep exactly one purchase row per checkout session."""
    fields = {"session_id": session_id, **fields}
    existing = await find_purchases(client, table, session_id)
    if not existing:
        return await client.create_record(table, fields)

    keep, extras = existing[0], existing[1:]
    updated = await client.update_record(table, keep["id"], fields)
    for rec in extras:
        try:
            await client.delete_record(table, rec["id"])
        except (AirtableError, httpx.HTTPError) as e:
            log.warning("duplicate purchase delete failed session_id=%s record=%s err=%s", session_id, rec.get("id"), e)
    return updated


# -----------------------------------------------------------------------------
# Shops
# -----------------------------------------------------------------------------
async def fetch_shop_pool(client: AirtableClient, table: str, area_group: str, max_records: int = 200) -> list[dict[str, Any]]:
    formula = f"AND({{status}}='active',{{area_group}}='{escape_formula_value(area_group)}')"
    return await client.list_records(table, formula=formula, max_records=max_records)


async def list_area_details(client: AirtableClient, table: str, pref: str) -> list[str]:
    formula = f"AND(FIND('{escape_formula_value(pref)}',{{area_group}})>0,{{status}}='active')"
    records = await client.list_records(table, formula=formula, fields=["area_detail", "area_group"])
    details: set[str] = set()
    for rec in records:
        v = (rec.get("fields") or {}).get("area_detail")
        if isinstance(v, str) and v.strip():
            details.add(v.strip())
    return sorted(details)
