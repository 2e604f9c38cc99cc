import pytest

from helpers import RecordingSleep
from tools.idempotency import Idem
from tools.store import ProspectStore


@pytest.fixture
def store() -> ProspectStore:
    return ProspectStore()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def memory_idem() -> Idem:
    """Idempotency guard pointed at a closed port so it always uses the in-memory fallback."""
    return Idem(redis_url="redis://127.0.0.1:1/0")
