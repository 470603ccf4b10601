"""
Shared fixtures for the GN registry test suite.

Unit tests run against an in-memory SQLite database shared through a
StaticPool, seeded with a small jurisdiction tree:

    N (national)
    ├── DS1 (district)
    │   ├── D1 (division)
    │   │   ├── G1 (gn)  3 families, 6 live citizens + 1 deceased
    │   │   └── G2 (gn)  5 families, 5 live citizens, 2 pending transfers
    │   └── D2 (division)
    │       └── G3 (gn)  1 family, no citizens
    └── DS2 (district)
        └── D3 (division)
            └── G4 (gn)  2 families, 2 live citizens
"""

from datetime import date
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from config_manager import ConfigManager
from registry.connection import DatabaseSettings, create_test_provider, set_db_provider
from registry.models import (
    Citizen,
    Family,
    JurisdictionLevel,
    JurisdictionNode,
    Role,
    User,
)
from registry.monitoring import reset_metrics
from registry.scope import JurisdictionTree, Principal
from registry.services import RequestContext
from security_logger import get_security_logger, reset_security_logger


@pytest.fixture(autouse=True)
def _isolated_globals():
    """Fresh security logger (no file output), config and metrics per test."""
    reset_security_logger()
    get_security_logger(enable_file=False).clear_request_context()
    ConfigManager.reset_instance()
    reset_metrics()
    yield
    reset_security_logger()
    ConfigManager.reset_instance()
    set_db_provider(None)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    yield engine
    engine.dispose()


@pytest.fixture
def provider(engine):
    provider = create_test_provider(engine=engine, settings=DatabaseSettings())
    provider.create_tables()
    return provider


@pytest.fixture
def session(provider):
    session = provider.session_factory()
    yield session
    session.close()


def _node(session, level, code, parent=None):
    node = JurisdictionNode(
        level=level,
        office_code=code,
        office_name=f"{code} Office",
        parent_id=parent.id if parent else None,
    )
    session.add(node)
    session.flush()
    return node


def _family(session, family_id, gn, pending=False, members=()):
    session.add(Family(
        family_id=family_id,
        gn_id=gn.id,
        address=f"{family_id} Main Street",
        member_count=len([m for m in members if m[3]]),
        has_pending_transfer=pending,
    ))
    for full_name, gender, dob, alive in members:
        session.add(Citizen(
            family_id=family_id,
            full_name=full_name,
            gender=gender,
            date_of_birth=dob,
            is_alive=alive,
        ))


def _user(session, username, role, node, is_active=True):
    user = User(username=username, role=role, jurisdiction_id=node.id if node else None,
                is_active=is_active)
    session.add(user)
    session.flush()
    return user


@pytest.fixture
def seeded(provider):
    """Seed the tree, families, citizens and accounts. Returns their ids."""
    with provider.session_scope() as s:
        n = _node(s, JurisdictionLevel.NATIONAL, "N")
        ds1 = _node(s, JurisdictionLevel.DISTRICT, "DS1", n)
        ds2 = _node(s, JurisdictionLevel.DISTRICT, "DS2", n)
        d1 = _node(s, JurisdictionLevel.DIVISION, "D1", ds1)
        d2 = _node(s, JurisdictionLevel.DIVISION, "D2", ds1)
        d3 = _node(s, JurisdictionLevel.DIVISION, "D3", ds2)
        g1 = _node(s, JurisdictionLevel.GN, "G1", d1)
        g2 = _node(s, JurisdictionLevel.GN, "G2", d1)
        g3 = _node(s, JurisdictionLevel.GN, "G3", d2)
        g4 = _node(s, JurisdictionLevel.GN, "G4", d3)

        # G1: each family has an adult man and a girl; the first also has a
        # deceased grandfather
        for i in range(1, 4):
            members = [
                (f"Perera Sunil {i}", "male", date(1980, 1, 1), True),
                (f"Perera Nadeesha {i}", "female", date(2015, 5, 5), True),
            ]
            if i == 1:
                members.append(("Perera Grandfather", "male", date(1940, 1, 1), False))
            _family(s, f"G1-F{i}", g1, members=members)

        # G2: one elderly woman per family, one without a birth date
        for i in range(1, 6):
            dob = None if i == 5 else date(1950, 1, 1)
            _family(s, f"G2-F{i}", g2, pending=i <= 2,
                    members=[(f"Silva Kamala {i}", "female", dob, True)])

        _family(s, "G3-F1", g3)

        for i in range(1, 3):
            _family(s, f"G4-F{i}", g4, members=[(f"Fernando Ruwan {i}", "male", date(1990, 1, 1), True)])

        moha = _user(s, "moha.admin", Role.MOHA, n)
        district = _user(s, "district.one", Role.DISTRICT, ds1)
        district2 = _user(s, "district.two", Role.DISTRICT, ds2)
        division = _user(s, "division.one", Role.DIVISION, d1)
        gn = _user(s, "gn.one", Role.GN, g1)
        gn4 = _user(s, "gn.four", Role.GN, g4)
        disabled = _user(s, "district.disabled", Role.DISTRICT, ds1, is_active=False)
        mismatched = _user(s, "division.misbound", Role.DIVISION, g1)
        orphan = _user(s, "gn.orphan", Role.GN, None)

        ids = SimpleNamespace(
            n=n.id, ds1=ds1.id, ds2=ds2.id,
            d1=d1.id, d2=d2.id, d3=d3.id,
            g1=g1.id, g2=g2.id, g3=g3.id, g4=g4.id,
            moha=moha.user_id, district=district.user_id, district2=district2.user_id,
            division=division.user_id, gn=gn.user_id, gn4=gn4.user_id,
            disabled=disabled.user_id, mismatched=mismatched.user_id, orphan=orphan.user_id,
        )
    return ids


@pytest.fixture
def tree(session, seeded):
    return JurisdictionTree.load(session)


@pytest.fixture
def principal_for(session, seeded):
    """Build a Principal from a seeded account id."""
    def build(user_id):
        return Principal.from_user(session.get(User, user_id))
    return build


@pytest.fixture
def ctx_for(principal_for):
    """Build a RequestContext from a seeded account id."""
    def build(user_id, ip_address="10.0.0.5", user_agent="pytest-agent"):
        return RequestContext(
            principal=principal_for(user_id),
            ip_address=ip_address,
            user_agent=user_agent,
            request_id="REQ-test",
        )
    return build
