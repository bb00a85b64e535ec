import argparse
import os
import sys

# Add the parent directory to the path so we can import the app
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from portal_app import create_app
from portal_app.fees.services import reconcile_all


def main(argv=None):
    parser = argparse.ArgumentParser(description="Check cached student fee balances against the payment ledger.")
    parser.add_argument("--fix", action="store_true", help="refresh every inconsistent student from the ledger")
    args = parser.parse_args(argv)

    app = create_app()
    with app.app_context():
        print("--- Reconciling fee cache ---")
        report = reconcile_all(fix=args.fix)

        print(f"Students checked: {report['checked']}")
        print(f"Inconsistent: {len(report['inconsistent'])}")
        for item in report["inconsistent"]:
            print(f"  student {item['student_id']}:")
            for m in item["mismatches"]:
                print(f"    fee row {m['student_fee_id']} {m['field']}: cached={m['cached']} expected={m.get('expected')}")
        if args.fix:
            print(f"Refreshed: {len(report['fixed'])}")

    return 1 if report["inconsistent"] and not args.fix else 0


if __name__ == "__main__":
    sys.exit(main())
