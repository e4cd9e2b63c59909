import argparse
import logging
import sys
from uuid import UUID

from donations.database import SessionLocal
from donations.services.approval_reconciler import ReconciliationError, recompute_case_amounts


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Recompute every case's funded amount from its approved contributions."
    )
    parser.add_argument(
        "--case-id",
        dest="case_ids",
        action="append",
        type=UUID,
        help="Only recompute this case (may be repeated)",
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    with SessionLocal() as session:
        try:
            report = recompute_case_amounts(session, args.case_ids)
        except ReconciliationError as exc:
            print(f"Recalculation failed: {exc}", file=sys.stderr)
            return 1

    for correction in report.corrections:
        print(
            f"Updated case {correction.case_id}: EGP {correction.previous_amount:,} -> "
            f"EGP {correction.corrected_amount:,} ({correction.approved_contributions} approved contributions)"
        )
    print(f"\nCases processed: {report.cases_checked}")
    print(f"Cases updated:   {report.cases_corrected}")
    print(f"Total corrected: EGP {report.total_drift:,}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
