"""Shared pytest fixtures for the automation orchestrator tests.

Database tests run against an in-memory SQLite database (aiosqlite) created
from the ORM metadata; generation providers are replaced with in-process
fakes (tests/support/fakes.py) so no test touches the network.
"""

import pytest


@pytest.fixture(autouse=True)
def automation_env(monkeypatch: pytest.MonkeyPatch):
    """Deterministic environment for every test.

    - One dispatch at a time (in-memory SQLite shares a single connection)
    - No Discord alerts, no cron secret, default auto-run interval
    """
    monkeypatch.setenv("MAX_CONCURRENT_DISPATCH", "1")
    for name in (
        "DISCORD_WEBHOOK_URL",
        "CRON_SECRET",
        "AUTO_RUN_MIN_INTERVAL_MINUTES",
        "POLL_INTERVAL_SECONDS",
    ):
        monkeypatch.delenv(name, raising=False)


# Import additional fixtures from fixtures/ package
from tests.fixtures.database import session_factory  # noqa: F401, E402
from tests.fixtures.providers import fake_providers  # noqa: F401, E402
