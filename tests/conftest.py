import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="taskdesk_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("OTP_HASH_TIME_COST", "1")
os.environ.setdefault("OTP_HASH_MEMORY_COST", "1024")
os.environ.setdefault("OTP_HASH_PARALLELISM", "1")
os.environ.setdefault("CREDENTIAL_SWEEP_INTERVAL_SECONDS", "0")
os.environ.pop("REDIS_URL", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from taskdesk.service.audit import ActivityLogger  # noqa: E402
from taskdesk.service.clock import FrozenClock  # noqa: E402
from taskdesk.service.errors import TransportError  # noqa: E402
from taskdesk.service.otp import OtpConfig, OtpEngine  # noqa: E402
from taskdesk.service.runtime import reset_runtime_for_tests  # noqa: E402
from taskdesk.service.session import SessionManager  # noqa: E402
from taskdesk.service.tokens import TokenConfig, TokenIssuer  # noqa: E402
from taskdesk.storage.memory import MemoryStore  # noqa: E402


class RecordingEmail:
    """Email transport double that keeps every code it was asked to send."""

    transport = "recording"

    def __init__(self):
        self.sent: list[tuple[str, str]] = []
        self.fail = False

    def send_otp(self, to_email: str, code: str) -> None:
        if self.fail:
            raise TransportError("Failed to send OTP email. Please try again later.")
        self.sent.append((to_email, code))

    def last_code(self, to_email: str | None = None) -> str:
        for address, code in reversed(self.sent):
            if to_email is None or address == to_email:
                return code
        raise AssertionError(f"no code sent to {to_email}")


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # A fresh state directory per test keeps the JSON snapshot from leaking between tests
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "shared"))
    reset_runtime_for_tests()
    yield
    # Drop env patches made by the test itself so the teardown reset sees valid settings
    monkeypatch.undo()
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FrozenClock(datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc))


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path / "store"))


@pytest.fixture
def otp_config():
    return OtpConfig(ttl_minutes=10, hash_time_cost=1, hash_memory_cost=1024, hash_parallelism=1)


@pytest.fixture
def token_config():
    return TokenConfig(
        secret="unit-test-signing-secret-0123456789abcdef",
        issuer="taskdesk",
        audience="taskdesk-clients",
        access_ttl_minutes=15,
        refresh_ttl_days=7,
    )


@pytest.fixture
def otp_engine(memory_store, otp_config, clock):
    return OtpEngine(memory_store, otp_config, clock=clock)


@pytest.fixture
def token_issuer(memory_store, token_config, clock):
    return TokenIssuer(memory_store, token_config, clock=clock)


@pytest.fixture
def recording_email():
    return RecordingEmail()


@pytest.fixture
def session_manager(memory_store, otp_engine, token_issuer, recording_email, clock):
    return SessionManager(
        memory_store,
        otp_engine,
        token_issuer,
        recording_email,
        ActivityLogger(memory_store),
        clock=clock,
    )


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
