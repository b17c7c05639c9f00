"""
Shared fixtures: a file-backed SQLite database per test, one seeded
company with admin / approver / viewer users, and a recording
notification sink.
"""

import os
import tempfile

_GLOBAL_DB_DIR = tempfile.mkdtemp(prefix="workflow-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_GLOBAL_DB_DIR}/app.db"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["EMAIL_NOTIFICATIONS_ENABLED"] = "false"
os.environ.pop("MAIL_USERNAME", None)
os.environ.pop("MAIL_PASSWORD", None)

from types import SimpleNamespace

import pytest
from sqlalchemy.orm import sessionmaker

from app.core.database import create_db_engine, init_db
from app.models.user import Company, Role, User
from app.services.workflow_engine import WorkflowEngine


class RecordingSink:
    """NotificationSink that keeps every delivered event"""

    def __init__(self):
        self.events = []

    def send(self, event):
        self.events.append(event)

    @property
    def types(self):
        return [event.type for event in self.events]

    def of_type(self, event_type):
        return [event for event in self.events if event.type == event_type]

    def clear(self):
        self.events.clear()


@pytest.fixture
def db_engine(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path}/workflow.db")
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def seed(db):
    company = Company(company_name="Acme Trading", currency="USD")
    other_company = Company(company_name="Globex Supplies", currency="EUR")
    db.add_all([company, other_company])
    db.flush()

    def role(name, company_id=company.id):
        r = Role(company_id=company_id, role_name=name, is_active=True)
        db.add(r)
        return r

    admin_role = role("Company Admin")
    approver_role = role("Approver")
    viewer_role = role("Viewer")
    purchaser_role = role("Purchaser")
    empty_role = role("Auditor")
    other_admin_role = role("Company Admin", other_company.id)
    db.flush()

    def user(first, last, email, role_obj, company_id=company.id):
        u = User(
            company_id=company_id,
            role_id=role_obj.id,
            email=email,
            first_name=first,
            last_name=last,
            user_type="internal",
            is_active=True,
        )
        db.add(u)
        return u

    admin = user("Amira", "Haddad", "admin@acme.test", admin_role)
    approver = user("Omar", "Nasser", "omar@acme.test", approver_role)
    approver2 = user("Lina", "Karam", "lina@acme.test", approver_role)
    viewer = user("Sami", "Aziz", "sami@acme.test", viewer_role)
    requester = user("Rania", "Fares", "rania@acme.test", purchaser_role)
    outsider = user("Mark", "Stone", "mark@globex.test", other_admin_role, other_company.id)
    db.commit()

    return SimpleNamespace(
        company=company,
        other_company=other_company,
        admin_role=admin_role,
        approver_role=approver_role,
        viewer_role=viewer_role,
        purchaser_role=purchaser_role,
        empty_role=empty_role,
        admin=admin,
        approver=approver,
        approver2=approver2,
        viewer=viewer,
        requester=requester,
        outsider=outsider,
    )


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def engine(db, sink, seed):
    return WorkflowEngine(db, sink)


@pytest.fixture
def make_template(engine, seed):
    """Create a template through the engine; defaults to one user step on purchase_order_create"""
    from factories import user_step

    def _make(steps=None, actor=None, **fields):
        data = {
            "name": "Purchase order approval",
            "trigger_type": "purchase_order_create",
            "steps": steps if steps is not None else [user_step(1, seed.approver.id)],
        }
        data.update(fields)
        return engine.create_template(actor or seed.admin, data)

    return _make


@pytest.fixture
def client(session_factory, sink, seed):
    from fastapi.testclient import TestClient

    from app.core.database import get_db
    from app.core.dependencies import get_notification_sink
    from app.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_notification_sink] = lambda: sink
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
