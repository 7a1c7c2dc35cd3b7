"""
Print a stored LearnedFormat by fingerprint or id.

Usage:
    python show_learned_format.py <fingerprint>
    python show_learned_format.py --id <format-id>
"""
import sys
import json

from spending_analyzer.ingest.fingerprint import decode_fingerprint
from spending_analyzer.ingest.models import LearnedFormat
from spending_analyzer.store import SupabaseStore


def show(key, by_id=False):
    store = SupabaseStore()
    if not store.is_configured():
        print("Supabase is not configured (SUPABASE_URL / SUPABASE_SERVICE_ROLE_KEY).")
        return 1

    row = store.get_format(key) if by_id else store.find_format_by_fingerprint(key)
    if not row:
        print("No learned format found.")
        return 1

    learned = LearnedFormat.from_record(row)
    print(f"Id:          {learned.id}")
    print(f"Bank:        {learned.bank_name} ({learned.statement_type})")
    print(f"Description: {learned.description}")
    print(f"Confidence:  {learned.confidence}")
    print(f"Learned at:  {learned.learned_at}")
    print(f"Last used:   {learned.last_used_at} (used {learned.use_count} times)")
    print(f"\n--- Layout ---")
    print(decode_fingerprint(learned.fingerprint))
    print(f"\n--- Procedure ---")
    print(json.dumps(learned.procedure, indent=2))
    print(f"\n--- Sample transactions ({len(learned.sample_transactions)}) ---")
    for txn in learned.sample_transactions:
        print(txn)
    return 0


if __name__ == "__main__":
    args = sys.argv[1:]
    if args[:1] == ["--id"] and len(args) == 2:
        sys.exit(show(args[1], by_id=True))
    if len(args) == 1:
        sys.exit(show(args[0]))
    print(__doc__)
    sys.exit(1)
