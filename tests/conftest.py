import os
import pathlib
import sys

import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import warden`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from warden.config import ConfigManager  # noqa: E402
from warden.events import EventBus, EventRecorder  # noqa: E402
from warden.governance import OperationEngine  # noqa: E402
from warden.identity import Identity  # noqa: E402


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "slow: concurrency stress tests (skipped unless WARDEN_RUN_SLOW=1)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list) -> None:
    run_slow = _env_flag('WARDEN_RUN_SLOW')
    for item in items:
        if 'slow' in item.keywords and not run_slow:
            item.add_marker(pytest.mark.skip(reason='slow tests skipped; set WARDEN_RUN_SLOW=1 to enable'))


# ---------------------------------------------------------------------------
# Fixtures


@pytest.fixture(autouse=True)
def fresh_config(monkeypatch):
    """Every test starts from default configuration with no WARDEN_* overrides."""
    for key in list(os.environ):
        if key.startswith("WARDEN_"):
            monkeypatch.delenv(key, raising=False)
    ConfigManager.reset()
    yield
    ConfigManager.reset()


def make_identity(n: int) -> Identity:
    """Deterministic identity: 0x followed by n rendered as 40 hex digits."""
    return Identity(f"0x{n:040x}")


@pytest.fixture
def ids():
    """Named identities used across tests."""
    class _Ids:
        A = make_identity(0xA)
        B = make_identity(0xB)
        C = make_identity(0xC)
        D = make_identity(0xD)
        X = make_identity(0x100)
        Y = make_identity(0x200)
        Z = make_identity(0x300)
        OUTSIDER = make_identity(0xDEAD)
        ENGINE = make_identity(0xE11)
    return _Ids


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def recorder(bus):
    return EventRecorder(bus)


@pytest.fixture
def engine(ids, bus):
    """{A, B, C} signers with a quorum of two; A is the deployer."""
    return OperationEngine(
        deployer=ids.A,
        signers=[ids.B, ids.C],
        required_signatures=2,
        bus=bus,
        identity=ids.ENGINE,
    )


@pytest.fixture
def solo_engine(ids, bus):
    """Single signer A with a quorum of one."""
    return OperationEngine(deployer=ids.A, required_signatures=1, bus=bus, identity=ids.ENGINE)


@pytest.fixture
def metadata():
    return {
        "asset_id": "bond-2031",
        "name": "Municipal Bond 2031",
        "symbol": "MB31",
        "decimals": 2,
        "valuation": "1000000.00",
        "document_hash": "ab" * 32,
    }
