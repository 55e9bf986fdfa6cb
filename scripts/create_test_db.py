#!/usr/bin/env python3
"""
Script to verify the test database configuration.

Tests default to a throwaway SQLite file; set TEST_DATABASE_URL to run the
suite against PostgreSQL (needed to exercise the asyncpg code paths and
the partial unique index under real concurrency).
"""

import os
import sys

from dotenv import load_dotenv


def main() -> int:
    """Check test database configuration."""
    print("=" * 70)
    print("Test Database Setup Verification")
    print("=" * 70)
    print()

    load_dotenv()

    prod_db = os.getenv("DATABASE_URL")
    test_db = os.getenv("TEST_DATABASE_URL")

    print("📊 Current Configuration:")
    print(f"   Service DB: {prod_db}")
    print(f"   Test DB:    {test_db or '(temporary SQLite file per test)'}")
    print()

    errors = []
    warnings = []

    if test_db and test_db == prod_db:
        errors.append("❌ CRITICAL: Test database is same as the service database!")
        errors.append("   Tests drop and recreate every table.")

    if test_db and test_db.startswith("postgresql") and "test" not in test_db.lower():
        warnings.append("⚠️  WARNING: Test database URL doesn't contain 'test'")
        warnings.append("   Consider using a database name like 'outpatient_queue_test'")

    if test_db and not test_db.startswith(("postgresql", "sqlite")):
        errors.append("❌ TEST_DATABASE_URL must be a postgresql:// or sqlite:/// URL")

    if errors:
        print("🚨 ERRORS FOUND:")
        for error in errors:
            print(f"   {error}")
        print()
        print("Fix these errors before running tests!")
        return 1

    if warnings:
        print("⚠️  WARNINGS:")
        for warning in warnings:
            print(f"   {warning}")
        print()

    print("✅ Test database configuration looks good!")
    print()
    print("Run tests with:")
    print("   pytest")
    print()
    return 0


if __name__ == "__main__":
    sys.exit(main())
