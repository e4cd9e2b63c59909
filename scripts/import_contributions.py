import argparse
import logging
import sys
from pathlib import Path

from donations.database import SessionLocal
from donations.services.contribution_csv import CsvFormatError
from donations.services.contribution_import import ContributionImportRunner, ImportSummary
from donations.services.contribution_writer import ImportAbortedError
from donations.services.identity_provider import IdentityProviderClient


def print_summary(summary: ImportSummary) -> None:
    mode = "DRY RUN" if summary.dry_run else "IMPORT"
    print(f"\n{mode} SUMMARY")
    print(f"  Rows read:              {summary.rows_read}")
    print(f"  Rows rejected:          {summary.rows_rejected}")
    print(f"  Cases found:            {summary.cases_found}")
    print(f"  Cases already imported: {summary.cases_existing}")
    print(f"  Rows already imported:  {summary.contributions_existing}")
    print(f"  Contributors found:     {summary.contributors_found}")
    if summary.earliest_contribution_date:
        print(f"  Earliest contribution:  {summary.earliest_contribution_date.isoformat()}")
    if summary.dry_run:
        return

    print(f"  Contributors created:   {summary.contributors_created}")
    print(f"  Contributors existing:  {summary.contributors_existing}")
    print(f"  Contributors recovered: {summary.contributors_recovered}")
    print(f"  Contributors failed:    {summary.contributors_failed}")
    print(f"  Cases created:          {summary.cases_created}")
    print(f"  Contributions inserted: {summary.contributions_inserted}")
    print(f"  Contributions skipped:  {summary.contributions_skipped}")
    print(f"  Contributions failed:   {summary.contributions_failed}")
    print(f"  Notifications created:  {summary.notifications_created}")

    for failure in summary.failed_contributors:
        print(f"  ! contributor {failure.contributor_id} ({failure.display_name}): {failure.reason}")
    for batch in summary.failed_batches:
        print(f"  ! batch {batch.batch_number} ({batch.size} rows): {batch.error}")


def run_import(csv_path: Path, *, dry_run: bool, notify_donors: bool) -> ImportSummary:
    text = csv_path.read_text(encoding="utf-8-sig")
    with SessionLocal() as session:
        runner = ContributionImportRunner(session, IdentityProviderClient())
        return runner.run(text, dry_run=dry_run, notify_donors=notify_donors)


def main() -> int:
    parser = argparse.ArgumentParser(description="Import historical contributions from a legacy CSV export.")
    parser.add_argument("csv_path", type=Path, help="Path to the contributions CSV file")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Parse and aggregate the file and report what would be imported without writing anything",
    )
    parser.add_argument(
        "--notify-donors",
        action="store_true",
        help="Create an approval notification for every imported contribution",
    )
    parser.add_argument("--log-level", default="INFO", help="Logging verbosity (default: INFO)")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if not args.csv_path.is_file():
        print(f"CSV file not found: {args.csv_path}", file=sys.stderr)
        return 2

    try:
        summary = run_import(args.csv_path, dry_run=args.dry_run, notify_donors=args.notify_donors)
    except CsvFormatError as exc:
        print(f"Invalid CSV: {exc}", file=sys.stderr)
        return 2
    except (ImportAbortedError, ValueError) as exc:
        print(f"Import aborted: {exc}", file=sys.stderr)
        return 1

    print_summary(summary)
    return 1 if summary.contributors_failed or summary.failed_batches else 0


if __name__ == "__main__":
    sys.exit(main())
