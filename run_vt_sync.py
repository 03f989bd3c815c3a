#!/usr/bin/env python3
"""
Convenience script to run the Tally VT sync.

Usage:
    # Sync every mapped table for one tenant
    python run_vt_sync.py --company C1 --division D1

    # Create the VT schema and register the tenant first
    python run_vt_sync.py --company C1 --division D1 --init-schema --register-tenant "Acme Traders"

    # Sync two tables, then run the integrity checks
    python run_vt_sync.py --company C1 --division D1 --tables vt_ledgers vt_vouchers --validate

    # Show the last sync recorded in the VT tables
    python run_vt_sync.py --company C1 --division D1 --status

Company and division default to VT_COMPANY_ID and VT_DIVISION_ID.
"""
import sys

from tally_vt_sync.sync import main


if __name__ == "__main__":
    sys.exit(main())
