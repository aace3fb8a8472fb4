"""
Year rollover: carry unused days from one year into the next.
Safe to rerun; keys already carried forward are skipped. The year must
have ended.

Usage:
  python scripts/run_carry_forward.py 2025
  python scripts/run_carry_forward.py 2025 --actor-id 1
  python scripts/run_carry_forward.py 2025 --verbose
"""
import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from leave_engine.core.errors import LeaveEngineError
from leave_engine.core.logging import setup_logging
from leave_engine.db.session import SessionLocal
from leave_engine.services.year_close_service import run_carry_forward


def main():
    parser = argparse.ArgumentParser(description="Carry forward unused leave into the next year")
    parser.add_argument("from_year", type=int, help="Year whose unused days roll over")
    parser.add_argument("--actor-id", type=int, default=None, help="Admin recorded in the audit log")
    parser.add_argument("--verbose", action="store_true", help="Debug logging (lock waits, ledger appends)")
    args = parser.parse_args()

    setup_logging("DEBUG" if args.verbose else None)
    db = SessionLocal()
    try:
        summary = run_carry_forward(db, args.from_year, actor_id=args.actor_id)
    except LeaveEngineError as exc:
        print(f"Carry forward refused: {exc.message}")
        sys.exit(1)
    finally:
        db.close()

    print(
        f"{summary['from_year']} -> {summary['to_year']}: {summary['processed']} processed, "
        f"{summary['credited']} credited ({summary['total_carried_forward']} days), "
        f"{summary['already_applied']} already applied"
    )
    for row in summary["details"]:
        print(f"  employee {row['employee_id']} {row['leave_type']}: +{row['carried_forward']}")


if __name__ == "__main__":
    main()
