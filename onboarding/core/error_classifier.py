from dataclasses import dataclass
from typing import Iterable, Optional

from onboarding.settings import settings

RETRY_GUIDANCE_MESSAGE = (
    "CM rejected the request with a temporary error. Please retry the submission."
)
FAILURE_MESSAGE = (
    "CM rejected the request. Please correct the record or contact master-data support."
)


@dataclass(frozen=True)
class Classification:
    retryable: bool
    userMessage: str


def _norm(code: Optional[str]) -> str:
    return (code or "").strip().upper()


class ErrorClassifier:
    """
    Decides whether a CM business error is worth resubmitting.

    The retryable predicate set is data: exact codes plus transient-family
    prefixes. Anything not matched, including empty or unknown codes, is
    terminal so that unclassified errors cannot loop through RETRY forever.
    """

    def __init__(self, retryable_codes: Iterable[str] = (), retryable_prefixes: Iterable[str] = ()):
        self.retryable_codes = frozenset(_norm(c) for c in retryable_codes if _norm(c))
        self.retryable_prefixes = tuple(_norm(p) for p in retryable_prefixes if _norm(p))

    def is_retryable(self, code: Optional[str]) -> bool:
        c = _norm(code)
        if not c:
            return False
        if c in self.retryable_codes:
            return True
        return any(c.startswith(p) for p in self.retryable_prefixes)

    def classify(self, code: Optional[str], message: Optional[str] = None) -> Classification:
        if self.is_retryable(code):
            return Classification(retryable=True, userMessage=RETRY_GUIDANCE_MESSAGE)
        return Classification(retryable=False, userMessage=FAILURE_MESSAGE)


def default_classifier() -> ErrorClassifier:
    return ErrorClassifier(settings.CM_RETRYABLE_CODES, settings.CM_RETRYABLE_PREFIXES)
