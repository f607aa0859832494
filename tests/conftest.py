"""
Shared fixtures for packet pipeline tests
"""
import os

# Keep the module-level engine off PostgreSQL and the worker out of the lifespan
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("PACKET_WORKER_ENABLED", "false")

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pytest

from app.config import settings
from app.models.packet import ClientRecord, PacketType, UserRecord
from app.services.email_service import EmailDeliveryError, EmailSender
from app.services.memory_store import InMemoryPacketStore
from app.services.packet_storage import LocalPacketStorage
from app.services.packet_templates import ContentPopulator
from app.services.pipeline import build_pipeline


class FakeClock:
    """Naive UTC clock that only moves when told to"""

    def __init__(self, start: datetime = datetime(2026, 1, 15, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, minutes: float = 0) -> datetime:
        self.now = self.now + timedelta(seconds=seconds, minutes=minutes)
        return self.now


class FakePopulator(ContentPopulator):
    """
    Returns fixed content, or raises the queued errors one call at a time.
    A queued None means "succeed on this call".
    """

    def __init__(self):
        self.errors: List[Optional[Exception]] = []
        self.always_raise: Optional[Exception] = None
        self.calls: List[str] = []

    def populate(self, client: ClientRecord, packet_type: PacketType) -> Dict[str, Any]:
        self.calls.append(PacketType(packet_type).value)
        if self.always_raise is not None:
            raise self.always_raise
        if self.errors:
            error = self.errors.pop(0)
            if error is not None:
                raise error
        return {
            "overview": [f"Plan for {client.full_name}"],
            "weeklyTargets": {"sessions": 3, "minutes": 45},
        }


class FakeEmailSender(EmailSender):
    """Records sends; addresses in fail_for raise EmailDeliveryError"""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self.fail_for = set()
        self.enabled = True

    def send(self, template: str, recipient_email: str, data: Dict[str, Any]) -> bool:
        if recipient_email in self.fail_for:
            raise EmailDeliveryError(f"SMTP refused {recipient_email}")
        if not self.enabled:
            return False
        self.sent.append({"template": template, "to": recipient_email, "data": data})
        return True

    def sent_with(self, template: str) -> List[Dict[str, Any]]:
        return [s for s in self.sent if s["template"] == template]


@pytest.fixture(autouse=True)
def audit_log_path(tmp_path, monkeypatch):
    """Send audit entries to a per-test file"""
    path = tmp_path / "audit.log"
    monkeypatch.setattr(settings, "audit_log_path", str(path))
    return path


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryPacketStore(clock=clock)


@pytest.fixture
def populator():
    return FakePopulator()


@pytest.fixture
def email_sender():
    return FakeEmailSender()


@pytest.fixture
def storage(tmp_path):
    return LocalPacketStorage(base_path=str(tmp_path / "packets"), public_prefix="/packets")


@pytest.fixture
def client_record(store):
    store.add_user(UserRecord(id="user-1", email="jane@example.com", name="Jane", role="CLIENT"))
    return store.add_client(ClientRecord(
        id="client-1",
        user_id="user-1",
        full_name="Jane Doe",
        email="jane@example.com",
        intake_responses={"goal": "lose weight", "weight_lbs": 180, "height_inches": 70},
    ))


@pytest.fixture
def admins(store):
    return [
        store.add_user(UserRecord(id="admin-1", email="admin1@example.com", name="Ada", role="ADMIN")),
        store.add_user(UserRecord(id="admin-2", email="admin2@example.com", name="Bo", role="ADMIN")),
    ]


@pytest.fixture
def pipeline(store, storage, populator, email_sender, clock):
    return build_pipeline(
        store=store,
        storage=storage,
        populator=populator,
        email_sender=email_sender,
        clock=clock,
        max_retries=3,
        base_seconds=5.0,
        max_seconds=300.0,
        stale_generating_minutes=10,
        batch_size=5,
    )
