"""
Migration script to create the digest_store table.
Run this SQL in Supabase SQL Editor before setting STORE_BACKEND=supabase.

With --import-file, copies an existing JSON store (userSettings and
digestHistory maps) into the Supabase row.
"""

import argparse

from database import SUPABASE_ROW_ID, SUPABASE_TABLE, JsonFileRepository, get_repository

SQL = f"""
-- Whole digest store, rewritten on every change
create table if not exists {SUPABASE_TABLE} (
  id text primary key default '{SUPABASE_ROW_ID}',
  user_settings jsonb not null default '{{}}'::jsonb,
  digest_history jsonb not null default '{{}}'::jsonb,
  updated_at timestamptz default now()
);
"""


def import_file(path: str) -> None:
    document = JsonFileRepository(path).load()
    get_repository("supabase").save(document)
    print(
        f"Imported {len(document.get('userSettings', {}))} recipient(s) and "
        f"{len(document.get('digestHistory', {}))} history list(s) from {path}"
    )


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--import-file", type=str, default="", help="JSON store file to copy into Supabase")
    args = parser.parse_args()

    if args.import_file:
        import_file(args.import_file)
    else:
        print("Run this SQL in your Supabase SQL Editor:")
        print("=" * 60)
        print(SQL)
        print("=" * 60)
