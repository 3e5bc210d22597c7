import os
import pathlib
import sys
import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import rollet`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from rollet.house_cert import AllowList, build_house_cert_payload, issue_house_cert  # noqa: E402
from rollet.infra.config import get_config_manager  # noqa: E402
from rollet.keys import KeyPair  # noqa: E402
from rollet.ledger import InMemoryLedgerStore, Ledger  # noqa: E402

# Fixed reference clock for deterministic windows (2024-03-01T00:00:00Z).
T0 = 1_709_251_200_000
MINUTE = 60_000
DAY = 24 * 60 * MINUTE


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "slow: slow correctness tests (skipped unless ROLLET_RUN_SLOW=1)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    run_slow = _env_flag('ROLLET_RUN_SLOW')

    for item in items:
        if 'slow' in item.keywords and not run_slow:
            item.add_marker(pytest.mark.skip(reason='slow tests skipped; set ROLLET_RUN_SLOW=1 to enable'))


@pytest.fixture(autouse=True)
def _fresh_config():
    mgr = get_config_manager()
    mgr.reset()
    yield mgr
    mgr.reset()


@pytest.fixture
def root_key() -> KeyPair:
    return KeyPair.generate()


@pytest.fixture
def house_key() -> KeyPair:
    return KeyPair.generate()


@pytest.fixture
def player_key() -> KeyPair:
    return KeyPair.generate()


@pytest.fixture
def house_cert(root_key, house_key):
    payload = build_house_cert_payload("h1", house_key.public_key, T0 - DAY, 30 * DAY)
    return issue_house_cert(payload, root_key)


@pytest.fixture
def allow_list(house_cert) -> AllowList:
    allow = AllowList()
    allow.add(house_cert)
    return allow


@pytest.fixture
def ledger() -> Ledger:
    return Ledger(InMemoryLedgerStore())
