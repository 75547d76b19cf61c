from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

AGENT = "AGENT"
CUSTOMER = "CUSTOMER"
ENTITY_KINDS = (AGENT, CUSTOMER)

# Parent-type records never go through CM
PARENT = "PARENT"


@dataclass
class OnboardingRecord:
    # Identity (immutable after creation)
    id: str = ""
    entityKind: str = AGENT
    typeDiscriminator: str = ""

    # Lifecycle
    stage: str = ""
    status: str = ""

    # Direct fields, copied verbatim into the CM request
    name: str = ""
    idType: str = ""
    idNumber: str = ""
    taxNumber: str = ""

    # Contact source fields (one contactMedium slot each)
    mobile: str = ""
    phone: str = ""
    fax: str = ""
    email: str = ""

    # Address source fields
    country: str = ""
    city: str = ""
    street: str = ""
    postalCode: str = ""
    locality: str = ""

    # Translated through the MZ mapping into relatedParty codes
    category: str = ""
    division: str = ""
    salesOrg: str = ""

    # Derived from the source fields above at submit/update time
    contactMedia: List[Dict[str, str]] = field(default_factory=list)
    addresses: List[Dict[str, str]] = field(default_factory=list)

    # CM party id ("sapBpId"): set once, never overwritten
    externalPartyId: str = ""

    # Last-seen mirror of the CM response, overwritten on every call attempt
    externalStatus: str = ""
    externalStatusCode: str = ""
    externalErrorReason: str = ""
    externalStatusMsg: str = ""

    createdAt: int = 0
    createdBy: str = ""

    @property
    def is_parent(self) -> bool:
        return (self.typeDiscriminator or "").strip().upper() == PARENT


@dataclass(frozen=True)
class ActivityRecord:
    recordId: str
    action: str
    outcome: str
    transactionId: str
    actorId: str
    timestamp: int
    sequence: int = 0
    fromStage: str = ""
    toStage: str = ""
    detail: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RequestContext:
    transactionId: str
    actorId: str = "system"


@dataclass
class StepResult:
    record: OnboardingRecord
    activity: ActivityRecord
    # SUCCESS / IN_PROGRESS / BUSINESS_FAILURE / TRANSIENT_FAILURE
    outcome: str = "SUCCESS"
    message: Optional[str] = None
