from rq import Retry

from onboarding.observability.logging import log
from onboarding.provisioning.user_client import create_local_user
from onboarding.queue.rq_conn import get_queue
from onboarding.settings import settings


def create_local_user_job(record_id: str, external_party_id: str, entity_kind: str):
    """
    Background job: provision the local user for a party CM just created.
    """
    try:
        log(event="local_user_job_start", recordId=record_id, externalPartyId=external_party_id)
        create_local_user(record_id, external_party_id, entity_kind)
    except Exception as e:
        log(event="local_user_job_exception", recordId=record_id, error=str(e))
        raise


def enqueue_local_user_creation(record_id: str, external_party_id: str, entity_kind: str) -> bool:
    """Returns True when the job was queued, False when provisioning is switched off."""
    if not settings.ENABLE_LOCAL_USER_PROVISIONING:
        return False
    q = get_queue()
    q.enqueue(
        create_local_user_job,
        record_id,
        external_party_id,
        entity_kind,
        retry=Retry(max=5, interval=[5, 15, 30, 60, 120]),
    )
    return True
