import json
import time
from onboarding.settings import settings

# Personal data carried on onboarding records; redacted when PII redaction is on
SENSITIVE_KEYS = {"name", "email", "mobile", "phone", "fax", "idNumber", "taxNumber", "street"}

def _redact_value(v):
    if isinstance(v, str) and len(v) > 0:
        return f"[REDACTED:{len(v)}chars]"
    if isinstance(v, dict):
        return {k: _redact_value(val) for k, val in v.items()}
    return v

def _redact_nested(v):
    if isinstance(v, dict):
        # Diff entries name the field in a value: {"field": "email", "from": .., "to": ..}
        if isinstance(v.get("field"), str) and v["field"] in SENSITIVE_KEYS:
            return {k: (_redact_value(val) if k in ("from", "to") else val) for k, val in v.items()}
        return {k: (_redact_value(val) if k in SENSITIVE_KEYS else _redact_nested(val)) for k, val in v.items()}
    if isinstance(v, list):
        return [_redact_nested(x) for x in v]
    return v

def log(event: str, **fields):
    payload = {"ts": int(time.time()), "event": event}

    if settings.ENABLE_PII_REDACTION:
        clean_fields = {}
        for k, v in fields.items():
            if k in SENSITIVE_KEYS:
                clean_fields[k] = _redact_value(v)
            else:
                # Field diffs and request previews carry PII one level down
                clean_fields[k] = _redact_nested(v)
        payload.update(clean_fields)
    else:
        payload.update(fields)

    print(json.dumps(payload, ensure_ascii=False, default=str))
