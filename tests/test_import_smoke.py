import sys
import pytest
from unittest.mock import patch


@pytest.mark.parametrize("enable_local_user", ["true", "false"])
@pytest.mark.parametrize("enable_redaction", ["true", "false"])
def test_import_graph_smoke(enable_local_user, enable_redaction):
    """
    The app must import cleanly regardless of feature flags, with no Redis or
    CM reachable at import time.
    """
    with patch.dict("os.environ", {
        "ENABLE_LOCAL_USER_PROVISIONING": enable_local_user,
        "ENABLE_PII_REDACTION": enable_redaction,
        "REDIS_URL": "redis://localhost:6379/0",  # harmless default
    }), patch.dict(sys.modules):
        for name in ("onboarding.main", "onboarding.core.orchestrator", "onboarding.queue.jobs"):
            sys.modules.pop(name, None)

        try:
            import onboarding.main
            import onboarding.core.orchestrator
            import onboarding.queue.jobs
        except ImportError as e:
            pytest.fail(f"Import failed with local_user={enable_local_user} redaction={enable_redaction}: {e}")


def test_uvicorn_importable():
    from onboarding.main import app
    assert app is not None
