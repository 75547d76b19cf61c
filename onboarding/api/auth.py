import uuid

from fastapi import Header, HTTPException

from onboarding.settings import settings
from onboarding.store.models import RequestContext


def require_api_key(x_api_key: str = Header(default="", alias="x-api-key")):
    """
    API key is optional:
    - If API_KEY env is empty: allow all requests.
    - If API_KEY env is set: require matching x-api-key header.
    """
    if not getattr(settings, "API_KEY", ""):
        return
    if x_api_key != settings.API_KEY:
        raise HTTPException(status_code=401, detail="Invalid API key")


def require_admin(x_admin_key: str = Header(default="", alias="x-admin-key")):
    if not settings.ADMIN_RBAC_ENABLED:
        return
    # Secure default: if enabled but no key configured, reject all.
    if not settings.ADMIN_API_KEY:
        raise HTTPException(status_code=403, detail="Admin access disabled (no key configured)")
    if x_admin_key != settings.ADMIN_API_KEY:
        raise HTTPException(status_code=403, detail="Invalid admin key")


def request_context(
    x_transaction_id: str = Header(default="", alias="x-transaction-id"),
    x_actor_id: str = Header(default="", alias="x-actor-id"),
) -> RequestContext:
    """Correlation id and actor for the activity log; generated/defaulted when absent."""
    return RequestContext(
        transactionId=x_transaction_id.strip() or uuid.uuid4().hex,
        actorId=x_actor_id.strip() or "anonymous",
    )
