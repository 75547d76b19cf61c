"""
Onboarding engine error taxonomy.

Only ValidationError, StageConflict, TranslationMiss and RecordNotFound abort an
operation. ExternalBusinessError and ExternalConnectivityError are raised by the
CM gateway client and always folded into a stage transition by the orchestrator.
"""
from typing import List, Optional


class OnboardingError(Exception):
    """Base class for every error the engine raises."""


class ValidationError(OnboardingError):
    def __init__(self, message: str, fields: Optional[List[str]] = None):
        super().__init__(message)
        self.fields = list(fields or [])


class StageConflict(OnboardingError):
    def __init__(self, message: str, record_id: str = "", stage: str = ""):
        super().__init__(message)
        self.record_id = record_id
        self.stage = stage


class RecordNotFound(OnboardingError):
    def __init__(self, record_id: str):
        super().__init__(f"Onboarding record {record_id} not found")
        self.record_id = record_id


class TranslationMiss(OnboardingError):
    """A required MZ mapping lookup failed. Configuration/data-quality problem."""

    def __init__(self, entity_category: str, group_key: str, source_value: str):
        super().__init__(
            f"No MZ mapping for {entity_category}/{group_key} value {source_value!r}"
        )
        self.entity_category = entity_category
        self.group_key = group_key
        self.source_value = source_value


class ExternalBusinessError(OnboardingError):
    """CM answered with a structured failure (status F)."""

    def __init__(self, code: str, reason: str = "", message: str = ""):
        super().__init__(f"CM business failure {code}: {reason or message}")
        self.code = code
        self.reason = reason
        self.message = message


class ExternalConnectivityError(OnboardingError):
    """Transport-level failure talking to CM: timeout, unreachable or malformed body."""

    TIMEOUT = "timeout"
    UNREACHABLE = "unreachable"
    MALFORMED = "malformed"

    def __init__(self, kind: str, detail: str = ""):
        super().__init__(f"CM connectivity failure ({kind}): {detail}")
        self.kind = kind
        self.detail = detail
