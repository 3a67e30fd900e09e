import os

# Avant tout import de backend.* : l'engine applicatif ne doit pas viser Postgres
os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime, timedelta, timezone  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from backend.app.api.deps import get_db, get_notifier_dep  # noqa: E402
from backend.app.db.base import Base  # noqa: E402
from backend.app.db.models import models_v1  # noqa: F401,E402
from backend.app.db.models.core_types import BoxType, InventoryStatus  # noqa: E402
from backend.app.db.models.models_v1 import InventoryUnit  # noqa: E402
from backend.app.main import app  # noqa: E402
from backend.services.inventory import derive_inventory_status  # noqa: E402
from backend.services.notifications import NotificationError  # noqa: E402


@pytest.fixture(scope="function")
def engine():
    """
    Base SQLite en mémoire, isolée par test.

    StaticPool : une seule connexion partagée, sinon chaque session
    verrait une base vide.
    """
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=eng)
    try:
        yield eng
    finally:
        Base.metadata.drop_all(bind=eng)
        eng.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture(scope="function")
def db_session(session_factory) -> Session:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent = []

    def send_batch_summary(self, summary) -> bool:
        if self.fail:
            raise NotificationError("webhook unreachable")
        self.sent.append(summary)
        return True


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def failing_notifier():
    return RecordingNotifier(fail=True)


@pytest.fixture
def make_unit(db_session):
    """Insère une unité de stock telle quelle (statut éventuellement "dérivé" faux)."""
    base_time = datetime(2026, 1, 1, tzinfo=timezone.utc)
    counter = {"n": 0}

    def _make(
        sku: str,
        country: str,
        quantity: int,
        *,
        boxes: int = 1,
        box_type: BoxType = BoxType.whole_box,
        mix_box_num: str | None = None,
        shipped: int = 0,
        status: InventoryStatus | None = None,
        packed_at: datetime | None = None,
    ) -> InventoryUnit:
        counter["n"] += 1
        unit = InventoryUnit(
            sku=sku,
            country=country,
            box_type=box_type,
            mix_box_num=mix_box_num,
            total_quantity=quantity,
            total_boxes=boxes,
            shipped_quantity=shipped,
            status=status or derive_inventory_status(shipped, quantity),
            operator="packer-test",
            packed_at=packed_at or base_time + timedelta(minutes=counter["n"]),
        )
        db_session.add(unit)
        db_session.commit()
        return unit

    return _make


@pytest.fixture
def client(session_factory, notifier):
    def _get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_notifier_dep] = lambda: notifier
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.clear()
