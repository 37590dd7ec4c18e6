"""
TRIALGUARD - Database Initialization Script
============================================
Creates all database tables and seeds a recipient directory and demo records.

Usage:
    python scripts/init_database.py [--drop] [--no-seed]
    
Options:
    --drop     Drop existing tables before creating (DESTRUCTIVE!)
    --no-seed  Skip seeding users and demo records
"""

import sys
import argparse
import logging
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import inspect

from trialguard.database.connection import get_db_manager
from trialguard.database.models import User, NotificationPreference
from trialguard.database.repositories import DomainRecordRepository, UserRepository

DEMO_TRIAL = "TRIAL-001"

DEMO_USERS = [
    ("u-dm-01", "dmanager", "Dana Manager", "dana.manager@example.org", "Data Manager", False),
    ("u-mm-01", "mmonitor", "Morgan Monitor", "morgan.monitor@example.org", "Medical Monitor", False),
    ("u-pi-01", "pinvestigator", "Pat Investigator", "pat.investigator@example.org", "Principal Investigator", True),
    ("u-cra-01", "cra", "Casey Associate", "casey.associate@example.org", "Clinical Research Associate", False),
]

DEMO_RECORDS = [
    ("LB", "Central Lab", "LB-0001", {
        "USUBJID": "TRIAL-001-S001", "LBTESTCD": "HGB", "LBTEST": "Hemoglobin",
        "LBORRES": "25.5", "LBORRESU": "g/dL", "LBSTNRLO": "13.0", "LBSTNRHI": "17.0",
    }),
    ("LB", "Central Lab", "LB-0002", {
        "USUBJID": "TRIAL-001-S002", "LBTESTCD": "HGB", "LBTEST": "Hemoglobin",
        "LBORRES": "14.2", "LBORRESU": "g/dL", "LBSTNRLO": "13.0", "LBSTNRHI": "17.0",
    }),
    ("VS", "EDC", "VS-0001", {
        "USUBJID": "TRIAL-001-S001", "VSTESTCD": "SYSBP", "VSORRES": "300", "VSDTC": "2025-03-16",
    }),
    ("DM", "EDC", "DM-0001", {"USUBJID": "TRIAL-001-S003", "SEX": "X", "AGE": "42"}),
    ("AE", "EDC", "AE-0001", {"USUBJID": "TRIAL-001-S002", "AETERM": "Headache", "AESTDTC": "2025-03-16"}),
    ("SV", "EDC", "SV-0001", {"USUBJID": "TRIAL-001-S001", "VISIT": "WEEK 2", "SVSTDTC": "2023-02-30"}),
]


def create_tables(drop_existing=False):
    """Create all database tables."""
    print("\n" + "="*60)
    print("CREATING DATABASE TABLES")
    print("="*60)
    
    db = get_db_manager()
    db.create_tables(drop_existing=drop_existing)
    
    tables = inspect(db.engine).get_table_names()
    print(f"\nCreated {len(tables)} tables:")
    for table in sorted(tables):
        print(f"   - {table}")
    return tables


def seed_users(session):
    """Seed the recipient directory."""
    print("\nSeeding users...")
    repo = UserRepository(session)
    created = 0
    for user_id, username, full_name, email, role, critical_only in DEMO_USERS:
        if repo.get_by_id(user_id):
            continue
        repo.create(
            User(user_id=user_id, username=username, full_name=full_name, email=email, role=role,
                 study_access=["All Studies"]),
            NotificationPreference(email_enabled=True, in_app_enabled=True, critical_only=critical_only),
        )
        created += 1
    print(f"   {created} users created")


def seed_records(session):
    """Seed demo domain records, several of which carry discrepancies."""
    print("\nSeeding demo domain records...")
    repo = DomainRecordRepository(session)
    for domain, source, record_id, data in DEMO_RECORDS:
        repo.upsert(DEMO_TRIAL, domain, source, record_id, data)
    print(f"   {len(DEMO_RECORDS)} records stored")


def run_init(drop_existing=False, seed_data=True):
    """Initialize the database."""
    db = get_db_manager()
    print("\nTesting database connection...")
    if not db.health_check():
        print("   Connection failed")
        return False
    print("   Connection successful!")
    
    tables = create_tables(drop_existing)
    
    if seed_data:
        print("\n" + "="*60)
        print("SEEDING DATABASE")
        print("="*60)
        with db.session() as session:
            seed_users(session)
            seed_records(session)
    
    print(f"\nDatabase ready ({len(tables)} tables)")
    return True


def main():
    parser = argparse.ArgumentParser(description="Initialize TrialGuard database")
    parser.add_argument("--drop", action="store_true", help="Drop existing tables (DESTRUCTIVE)")
    parser.add_argument("--no-seed", action="store_true", help="Skip seeding data")
    
    args = parser.parse_args()
    
    logging.basicConfig(level=logging.INFO, format='%(asctime)s | %(levelname)s | %(message)s')
    
    if args.drop:
        confirm = input("\nThis will DELETE all existing data. Type 'yes' to confirm: ")
        if confirm.lower() != "yes":
            print("Aborted.")
            return
    
    success = run_init(drop_existing=args.drop, seed_data=not args.no_seed)
    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
