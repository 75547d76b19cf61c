"""
CM gateway client.

Three outcome classes leave this module and the orchestrator relies on them
being distinct:
- GatewayResponse for status S (complete) / P (in progress)
- ExternalBusinessError for status F
- ExternalConnectivityError for timeouts, transport errors, 5xx and any body
  that cannot be interpreted
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from onboarding.core.errors import ExternalBusinessError, ExternalConnectivityError
from onboarding.observability.logging import log
from onboarding.settings import settings
from onboarding.utils.time import elapsed_ms
import onboarding.observability.metrics as metrics

SUCCESS_STATUSES = ("S", "P")


@dataclass
class GatewayResponse:
    status: str
    partyId: str
    relatedParty: List[Dict[str, Any]] = field(default_factory=list)
    message: str = ""
    raw: Dict[str, Any] = field(default_factory=dict)


def _url(path: str) -> str:
    base = (settings.CM_BASE_URL or "").rstrip("/")
    if not base:
        raise ExternalConnectivityError(ExternalConnectivityError.UNREACHABLE, "CM_BASE_URL is not set")
    return f"{base}/{path.lstrip('/')}"


def _headers(transaction_id: str = "") -> Dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if settings.CM_API_KEY:
        headers["x-api-key"] = settings.CM_API_KEY
    if transaction_id:
        headers["x-transaction-id"] = transaction_id
    return headers


def _send(method: str, path: str, *, payload: Optional[dict] = None, transaction_id: str = "", op: str = ""):
    """Perform one HTTP exchange and return (status_code, decoded JSON body)."""
    url = _url(path)
    start = time.monotonic()
    try:
        with httpx.Client(timeout=settings.CM_TIMEOUT_SEC) as client:
            if method == "GET":
                resp = client.get(url, headers=_headers(transaction_id))
            else:
                resp = client.post(url, json=payload, headers=_headers(transaction_id))
    except httpx.TimeoutException as e:
        metrics.record_gateway_call(op, "timeout", elapsed_ms(start))
        raise ExternalConnectivityError(ExternalConnectivityError.TIMEOUT, str(e) or "timed out")
    except httpx.HTTPError as e:
        metrics.record_gateway_call(op, "unreachable", elapsed_ms(start))
        raise ExternalConnectivityError(ExternalConnectivityError.UNREACHABLE, f"{type(e).__name__}: {e}")

    took_ms = elapsed_ms(start)
    if resp.status_code >= 500:
        metrics.record_gateway_call(op, "unreachable", took_ms)
        raise ExternalConnectivityError(
            ExternalConnectivityError.UNREACHABLE, f"HTTP {resp.status_code}: {(resp.text or '')[:200]}"
        )
    if method == "GET" and resp.status_code == 404:
        metrics.record_gateway_call(op, "answered", took_ms)
        return resp.status_code, None
    try:
        body = resp.json()
    except ValueError:
        metrics.record_gateway_call(op, "malformed", took_ms)
        raise ExternalConnectivityError(ExternalConnectivityError.MALFORMED, "response body is not JSON")

    metrics.record_gateway_call(op, "answered", took_ms)
    return resp.status_code, body


def _business_error(body: Dict[str, Any]) -> ExternalBusinessError:
    err = body.get("error") if isinstance(body.get("error"), dict) else {}
    return ExternalBusinessError(
        code=str(body.get("code") or err.get("code") or ""),
        reason=str(body.get("reason") or err.get("reason") or ""),
        message=str(body.get("message") or err.get("message") or ""),
    )


def _interpret(status_code: int, body: Any) -> GatewayResponse:
    if not isinstance(body, dict):
        raise ExternalConnectivityError(ExternalConnectivityError.MALFORMED, "response body is not an object")

    status = str(body.get("status") or "").strip().upper()
    if status == "F":
        raise _business_error(body)

    if status in SUCCESS_STATUSES and status_code < 400:
        related = body.get("relatedParty")
        if isinstance(related, list) and related and isinstance(related[0], dict) and related[0].get("id"):
            return GatewayResponse(
                status=status,
                partyId=str(related[0]["id"]),
                relatedParty=related,
                message=str(body.get("message") or ""),
                raw=body,
            )
        raise ExternalConnectivityError(
            ExternalConnectivityError.MALFORMED, f"status {status} without relatedParty id"
        )

    raise ExternalConnectivityError(
        ExternalConnectivityError.MALFORMED, f"HTTP {status_code} with unrecognised status {status!r}"
    )


def _submit(op: str, path: str, request: Dict[str, Any], transaction_id: str) -> GatewayResponse:
    log(event="cm_call_attempt", op=op, externalReference=request.get("externalReference"),
        transactionId=transaction_id, timeoutSec=settings.CM_TIMEOUT_SEC)
    status_code, body = _send("POST", path, payload=request, transaction_id=transaction_id, op=op)
    result = _interpret(status_code, body)
    log(event="cm_call_result", op=op, externalReference=request.get("externalReference"),
        transactionId=transaction_id, cmStatus=result.status, partyId=result.partyId)
    return result


def create_onboarding(request: Dict[str, Any], transaction_id: str = "") -> GatewayResponse:
    return _submit("create", settings.CM_CREATE_PATH, request, transaction_id)


def update_onboarding(request: Dict[str, Any], transaction_id: str = "") -> GatewayResponse:
    return _submit("update", settings.CM_UPDATE_PATH, request, transaction_id)


def get_by_external_id(party_id: str, transaction_id: str = "") -> Optional[Dict[str, Any]]:
    """Read-only lookup by a previously assigned CM party id. None when CM does not know it."""
    status_code, body = _send("GET", f"{settings.CM_PARTY_PATH.rstrip('/')}/{party_id}",
                              transaction_id=transaction_id, op="get")
    if status_code == 404:
        return None
    if status_code >= 400 or not isinstance(body, dict):
        raise ExternalConnectivityError(ExternalConnectivityError.MALFORMED, f"HTTP {status_code} on party lookup")
    return body


def list_parties(transaction_id: str = "") -> List[Dict[str, Any]]:
    status_code, body = _send("GET", settings.CM_PARTY_PATH, transaction_id=transaction_id, op="list")
    if status_code >= 400:
        raise ExternalConnectivityError(ExternalConnectivityError.MALFORMED, f"HTTP {status_code} on party list")
    if isinstance(body, dict):
        body = body.get("items") or body.get("parties") or []
    if not isinstance(body, list):
        raise ExternalConnectivityError(ExternalConnectivityError.MALFORMED, "party list is not a list")
    return [x for x in body if isinstance(x, dict)]


def find_by_external_reference(reference: str, transaction_id: str = "") -> Optional[Dict[str, Any]]:
    """The CM party created for one of our records (matched on externalReference), or None."""
    for party in list_parties(transaction_id):
        if str(party.get("externalReference") or "") == reference:
            return party
    return None


def _interpret_party(party: Dict[str, Any]) -> GatewayResponse:
    status = str(party.get("status") or "").strip().upper()
    if status == "F":
        raise _business_error(party)
    related = party.get("relatedParty") if isinstance(party.get("relatedParty"), list) else []
    party_id = party.get("id") or (related[0].get("id") if related and isinstance(related[0], dict) else "")
    if status in SUCCESS_STATUSES and party_id:
        return GatewayResponse(status=status, partyId=str(party_id), relatedParty=related,
                               message=str(party.get("message") or ""), raw=party)
    raise ExternalConnectivityError(
        ExternalConnectivityError.MALFORMED, f"party lookup returned status {status!r} without a usable id"
    )


def lookup_party(party_id: str = "", external_reference: str = "",
                 transaction_id: str = "") -> Optional[GatewayResponse]:
    """
    Current CM view of a submitted record, with the same outcome classes as a
    create call. Looks up by party id when one was assigned, otherwise by our
    record id. None only when CM has nothing under that record id.
    """
    if party_id:
        party = get_by_external_id(party_id, transaction_id)
        if party is None:
            raise ExternalConnectivityError(
                ExternalConnectivityError.MALFORMED, f"CM does not know assigned party {party_id}"
            )
    else:
        party = find_by_external_reference(external_reference, transaction_id)
        if party is None:
            return None
    result = _interpret_party(party)
    log(event="cm_party_lookup", partyId=result.partyId, externalReference=external_reference,
        transactionId=transaction_id, cmStatus=result.status)
    return result
