import time

import httpx

from onboarding.observability.logging import log
from onboarding.settings import settings


def create_local_user(record_id: str, external_party_id: str, entity_kind: str) -> bool:
    """
    Ask the user service to create the local login for a newly onboarded party.
    Raises on failure so the RQ job is retried.
    """
    if not settings.USER_SERVICE_URL:
        raise RuntimeError("USER_SERVICE_URL is not set")

    payload = {
        "recordId": record_id,
        "externalPartyId": external_party_id,
        "entityKind": entity_kind,
    }
    headers = {
        # The party id is stable, so the user service can dedupe on it
        "Idempotency-Key": f"local-user:{external_party_id}",
        "Content-Type": "application/json",
    }
    start = time.time()
    with httpx.Client(timeout=settings.USER_SERVICE_TIMEOUT_SEC) as client:
        resp = client.post(settings.USER_SERVICE_URL, json=payload, headers=headers)
    elapsed_ms = int((time.time() - start) * 1000)

    if 200 <= resp.status_code < 300 or resp.status_code == 409:
        # 409: user already exists for this party
        log(event="local_user_created", recordId=record_id, externalPartyId=external_party_id,
            statusCode=int(resp.status_code), elapsedMs=elapsed_ms)
        return True

    log(event="local_user_create_failed", recordId=record_id, externalPartyId=external_party_id,
        statusCode=int(resp.status_code), elapsedMs=elapsed_ms, responseText=(resp.text or "")[:500])
    raise RuntimeError(f"User service failed: {resp.status_code} {resp.text}")
