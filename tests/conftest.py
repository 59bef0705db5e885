import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)


@pytest.fixture(autouse=True)
def _isolated_singletons(monkeypatch):
    """Every test starts with empty in-memory stores and no Redis/Mongo configured."""
    for var in (
        "REDIS_URL",
        "INFLOW_CACHE_STORE_IMPL",
        "INFLOW_CHAT_STORE_IMPL",
        "INFLOW_ARTIFACT_STORE_IMPL",
        "INFLOW_RATE_LIMIT_IMPL",
        "INFLOW_CREDITS_IMPL",
    ):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("JWT_SECRET", "test-secret")

    from src.inflow.infrastructure import artifact_store, cache_store, chat_store, events, repository
    from src.inflow.security import auth, credits, rate_limit
    from src.inflow.services import chat_gateway, pipeline_service, system_prompt, telemetry_sink

    resets = (
        auth.reset_users,
        rate_limit.reset_rate_limits,
        credits.reset_credit_ledger,
        cache_store.reset_cache_store,
        chat_store.reset_chat_store,
        artifact_store.reset_artifact_store,
        repository.reset_repo,
        events.reset_publisher,
        telemetry_sink.reset_telemetry,
        system_prompt.reset_prompt_store,
        pipeline_service.reset_pipeline,
        chat_gateway.reset_chat_gateway,
    )
    for reset in resets:
        reset()
    yield
    for reset in resets:
        reset()
