import os
import sys
import tempfile
from datetime import date, timedelta
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="medtracker_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from medtracker.config import Settings  # noqa: E402
from medtracker.service.auth import AuthService, Identity  # noqa: E402
from medtracker.service.medicines import MedicineDraft, MedicineService  # noqa: E402
from medtracker.service.profiles import ProfileService  # noqa: E402
from medtracker.service.revocation import TokenRevocationService  # noqa: E402
from medtracker.service.runtime import reset_runtime_for_tests  # noqa: E402
from medtracker.service.schedules import ScheduleService  # noqa: E402
from medtracker.service.tokens import TokenService  # noqa: E402
from medtracker.storage.memory import MemoryStore  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # fresh store directory per test so persisted state never leaks between tests
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "shared"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        token_ttl_minutes=60,
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path / "store"))


@pytest.fixture
def token_service(settings):
    return TokenService(settings)


@pytest.fixture
def revocations(memory_store):
    return TokenRevocationService(memory_store)


@pytest.fixture
def auth_service(memory_store, token_service, revocations):
    return AuthService(memory_store, token_service, revocations)


@pytest.fixture
def profile_service(memory_store):
    return ProfileService(memory_store)


@pytest.fixture
def medicine_service(memory_store):
    return MedicineService(memory_store, memory_store)


@pytest.fixture
def schedule_service(memory_store):
    return ScheduleService(memory_store, memory_store, memory_store)


@pytest.fixture
def alice(auth_service):
    result = auth_service.register("alice@example.com", "secret1")
    return Identity(user_id=result.user_id, email=result.email)


@pytest.fixture
def bob(auth_service):
    result = auth_service.register("bob@example.com", "secret2")
    return Identity(user_id=result.user_id, email=result.email)


def make_draft(**overrides) -> MedicineDraft:
    values = {
        "name": "Ibuprofen",
        "quantity": 10,
        "expiry_date": date.today() + timedelta(days=365),
        "dosage": "200mg",
    }
    values.update(overrides)
    return MedicineDraft(**values)


@pytest.fixture
def draft():
    return make_draft
