"""Shared fixtures: in-memory database, actors and notification recorders."""
from datetime import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from itsm_core import schemas, workflow
from itsm_core.models import Base, BusinessPriority
from itsm_core.roles import resolve_actor

REQUESTOR_ID = 1
LINE_MANAGER_ID = 2
HEAD_OF_IT_ID = 3
IT_OFFICER_ID = 4
QA_OFFICER_ID = 5
HEAD_OF_INFOSEC_ID = 6
NOC_ID = 7


class RecordingDispatcher:
    """Collects notifications instead of delivering them."""

    def __init__(self):
        self.sent = []

    def notify(self, snapshot, kind, recipients):
        self.sent.append((snapshot, kind, recipients))

    @property
    def kinds(self):
        return [kind for _, kind, _ in self.sent]


class FailingDispatcher:
    """Dispatcher whose transport is down."""

    def __init__(self):
        self.calls = 0

    def notify(self, snapshot, kind, recipients):
        self.calls += 1
        raise ConnectionError("mail gateway unreachable")


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def notifier():
    return RecordingDispatcher()


@pytest.fixture
def actors():
    """One actor per workflow role, keyed by role name."""
    return {
        "requestor": resolve_actor(REQUESTOR_ID),
        "line_manager": resolve_actor(LINE_MANAGER_ID, ["line_manager"]),
        "head_of_it": resolve_actor(HEAD_OF_IT_ID, ["head_of_it"]),
        "it_officer": resolve_actor(IT_OFFICER_ID, ["it_officer"]),
        "qa_officer": resolve_actor(QA_OFFICER_ID, ["qa_officer"]),
        "head_of_infosec": resolve_actor(HEAD_OF_INFOSEC_ID, ["head_of_infosec"]),
        "noc": resolve_actor(NOC_ID, ["noc"]),
    }


def make_create_payload(**overrides) -> schemas.ChangeRequestCreate:
    data = {
        "purpose_of_change": "Upgrade POS terminal firmware",
        "description_of_change": "Roll out firmware 4.2 to all merchant POS terminals",
        "line_manager_id": LINE_MANAGER_ID,
        "business_priority": BusinessPriority.MEDIUM,
    }
    data.update(overrides)
    return schemas.ChangeRequestCreate(**data)


def make_ito_payload(**overrides) -> schemas.ITOfficerFieldsUpdate:
    data = {
        "category": "SERVERS",
        "subcategory": "AMEX",
        "impacts_client_service": False,
        "impact_assessment": "No customer impact expected",
        "backout_rollback_plan": "Restore previous firmware image",
        "expected_downtime_value": 30,
        "expected_downtime_unit": "Minutes",
        "planned_datetime": datetime(2025, 7, 1, 22, 0),
        "last_backup_date": datetime(2025, 6, 30, 20, 0),
    }
    data.update(overrides)
    return schemas.ITOfficerFieldsUpdate(**data)


def make_close_payload(**overrides) -> schemas.ChangeRequestClose:
    data = {
        "noc_closure_notes": "Monitored, no alerts",
        "incident_triggered": False,
        "rollback_triggered": False,
    }
    data.update(overrides)
    return schemas.ChangeRequestClose(**data)


def approve_payload_for(stage: int) -> schemas.ChangeRequestApprove:
    if stage == 3:
        return schemas.ChangeRequestApprove(assigned_to_it_officer_id=IT_OFFICER_ID)
    if stage == 7:
        return schemas.ChangeRequestApprove(risk_accepted=True)
    return schemas.ChangeRequestApprove(comments=f"Stage {stage} OK")


# Maps stage → actor key allowed to approve at that stage
STAGE_ACTORS = {
    2: "line_manager",
    3: "head_of_it",
    4: "it_officer",
    5: "requestor",
    6: "qa_officer",
    7: "head_of_it",
    8: "head_of_infosec",
    9: "it_officer",
}


@pytest.fixture
def create_cr(db, actors, notifier):
    """Factory creating a CR and optionally driving it to `stage`."""

    def _create(stage: int = 2, **overrides):
        cr = workflow.create_change_request(db, make_create_payload(**overrides), actors["requestor"], notifier)
        while cr.current_stage < stage:
            current = cr.current_stage
            if current == 4:
                workflow.update_it_officer_fields(db, cr.id, make_ito_payload(), actors["it_officer"])
            cr = workflow.approve_change_request(
                db, cr.id, approve_payload_for(current), actors[STAGE_ACTORS[current]], notifier
            )
        return cr

    return _create
