from storyboard_video.db import init_db, ledger_discrepancies


def main() -> int:
    init_db()
    bad = ledger_discrepancies()
    for row in bad:
        print(f"user={row['user_id']} balance={row['balance']} ledger_sum={row['ledger_sum']}")

    print(f"Ledger discrepancies: {len(bad)}")
    return 1 if bad else 0


if __name__ == "__main__":
    raise SystemExit(main())
