#!/usr/bin/env python3
"""
Initial Data Loading Script for the GN Registry

Loads initial reference data into the database including:
- The national root jurisdiction and a national (MOHA) account
- A sample district / division / GN hierarchy with officer accounts (optional)
- Sample families and citizens (optional, for development)

Usage:
    python load_initial_data.py [--with-samples]
"""

import argparse
import logging
from datetime import date

from sqlalchemy import select

from config_manager import get_config
from registry.connection import DatabaseSettings, init_db, close_db
from registry.models import Citizen, Family, JurisdictionLevel, JurisdictionNode, Role
from registry.repositories import FamilyRepository, JurisdictionRepository, UserRepository

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

NATIONAL_CODE = "MOHA"

# (level, code, name, parent code)
SAMPLE_HIERARCHY = [
    (JurisdictionLevel.DISTRICT, "DS-CMB", "Colombo District Secretariat", NATIONAL_CODE),
    (JurisdictionLevel.DIVISION, "DV-CMB-01", "Colombo Divisional Secretariat", "DS-CMB"),
    (JurisdictionLevel.DIVISION, "DV-CMB-02", "Dehiwala Divisional Secretariat", "DS-CMB"),
    (JurisdictionLevel.GN, "GN-CMB-01-001", "Kotahena East", "DV-CMB-01"),
    (JurisdictionLevel.GN, "GN-CMB-01-002", "Kotahena West", "DV-CMB-01"),
    (JurisdictionLevel.GN, "GN-CMB-02-001", "Dehiwala North", "DV-CMB-02"),
]

# (username, role, jurisdiction code)
SAMPLE_ACCOUNTS = [
    ("district.colombo", Role.DISTRICT, "DS-CMB"),
    ("division.colombo", Role.DIVISION, "DV-CMB-01"),
    ("gn.kotahena.east", Role.GN, "GN-CMB-01-001"),
]


def _find_node(session, level: JurisdictionLevel, code: str):
    return session.execute(
        select(JurisdictionNode).where(
            JurisdictionNode.level == level,
            JurisdictionNode.office_code == code
        )
    ).scalar_one_or_none()


def load_national_root(session):
    """Create the national root and the MOHA account."""
    created = 0
    repo = JurisdictionRepository(session)
    root = _find_node(session, JurisdictionLevel.NATIONAL, NATIONAL_CODE)
    if root is None:
        root = repo.create(JurisdictionLevel.NATIONAL, NATIONAL_CODE, "Ministry of Home Affairs")
        created += 1
        logger.info(f"Created national root: {root.id}")
    else:
        logger.info("National root already exists")

    users = UserRepository(session)
    if users.get_by_username("moha.admin") is None:
        users.create("moha.admin", Role.MOHA, jurisdiction_id=root.id)
        created += 1
        logger.info("Created account: moha.admin")

    return created


def load_sample_hierarchy(session):
    """Create the sample districts, divisions and GN divisions plus their officers."""
    repo = JurisdictionRepository(session)
    level_of = {NATIONAL_CODE: JurisdictionLevel.NATIONAL}
    created = 0

    for level, code, name, parent_code in SAMPLE_HIERARCHY:
        level_of[code] = level
        if _find_node(session, level, code):
            logger.info(f"Jurisdiction already exists: {code}")
            continue
        parent = _find_node(session, level_of[parent_code], parent_code)
        repo.create(level, code, name, parent_id=parent.id)
        created += 1
        logger.info(f"Created jurisdiction: {code}")

    users = UserRepository(session)
    for username, role, code in SAMPLE_ACCOUNTS:
        if users.get_by_username(username):
            continue
        node = _find_node(session, level_of[code], code)
        users.create(username, role, jurisdiction_id=node.id)
        created += 1
        logger.info(f"Created account: {username}")

    return created


def load_sample_families(session):
    """Load a handful of families and citizens under the first sample GN."""
    gn = _find_node(session, JurisdictionLevel.GN, "GN-CMB-01-001")
    samples = [
        ("FAM-0001", "12 Temple Road", [
            ("Perera Mudiyanselage Sunil", "male", date(1970, 3, 2), "head"),
            ("Perera Mudiyanselage Kamala", "female", date(1974, 8, 19), "spouse"),
            ("Perera Mudiyanselage Nimal", "male", date(2010, 1, 5), "son"),
        ]),
        ("FAM-0002", "4 Harbour Lane", [
            ("Silva Arachchige Ruwan", "male", date(1955, 11, 30), "head"),
        ]),
    ]

    created = 0
    for family_id, address, members in samples:
        if session.get(Family, family_id):
            logger.info(f"Family already exists: {family_id}")
            continue
        session.add(Family(family_id=family_id, gn_id=gn.id, address=address))
        for full_name, gender, dob, relation in members:
            session.add(Citizen(
                family_id=family_id,
                full_name=full_name,
                gender=gender,
                date_of_birth=dob,
                relation_to_head=relation,
            ))
        created += 1
        logger.info(f"Created family: {family_id} ({len(members)} members)")

    session.flush()
    FamilyRepository(session).refresh_member_count(gn_ids=[gn.id])
    return created


def main():
    parser = argparse.ArgumentParser(description="Load initial data into the GN registry database")
    parser.add_argument("--with-samples", action="store_true", help="Include sample hierarchy and families")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    logger.info("=" * 50)
    logger.info("GN Registry Initial Data Loading")
    logger.info("=" * 50)

    try:
        config = get_config()
        db = init_db(DatabaseSettings.from_config(config.database))

        with db.session_scope() as session:
            logger.info("[1/3] Loading national root...")
            logger.info(f"Records created: {load_national_root(session)}")

            if args.with_samples:
                logger.info("[2/3] Loading sample hierarchy...")
                logger.info(f"Records created: {load_sample_hierarchy(session)}")

                logger.info("[3/3] Loading sample families...")
                logger.info(f"Families created: {load_sample_families(session)}")
            else:
                logger.info("[2/3] Skipping sample data (use --with-samples to include)")

        logger.info("=" * 50)
        logger.info("Initial data loading complete!")
        logger.info("=" * 50)
    except Exception as e:
        logger.error(f"Error loading initial data: {e}")
        raise
    finally:
        close_db()


if __name__ == "__main__":
    main()
