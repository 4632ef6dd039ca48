#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from sqlalchemy import select

from taleturn.db.models import World
from taleturn.db.session import SessionLocal
from taleturn.modules.ledger.service import ResourceLedger

DEFAULT_WORLD_FILE = ROOT_DIR / "data" / "worlds" / "mystika.json"
REQUIRED_WORLD_KEYS = ("slug", "title", "lore_text", "ruleset_text")


def _load_world_json(path: Path) -> dict:
    payload = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise ValueError(f"world file must contain a JSON object: {path}")
    missing = [key for key in REQUIRED_WORLD_KEYS if not str(payload.get(key) or "").strip()]
    if missing:
        raise ValueError(f"world file {path} is missing: {', '.join(missing)}")
    return payload


def seed_world(*, world_file: Path) -> dict:
    if not world_file.exists():
        raise FileNotFoundError(f"world file not found: {world_file}")

    payload = _load_world_json(world_file)
    slug = str(payload["slug"]).strip()
    created = False
    with SessionLocal() as db:
        with db.begin():
            row = db.execute(select(World).where(World.slug == slug)).scalar_one_or_none()
            if row is None:
                row = World(slug=slug)
                db.add(row)
                created = True
            row.title = str(payload["title"]).strip()
            row.lore_text = str(payload["lore_text"]).strip()
            row.ruleset_text = str(payload["ruleset_text"]).strip()

    return {"slug": slug, "created": created, "source_path": str(world_file)}


def grant_balance(*, owner_id: str, amount: int) -> int:
    ledger = ResourceLedger()
    with SessionLocal() as db:
        with db.begin():
            return ledger.credit(db, owner_id, amount=amount, reason="SEED_GRANT")


def _parse_grant(value: str) -> tuple[str, int]:
    owner_id, sep, amount = value.rpartition(":")
    if not sep or not owner_id.strip():
        raise argparse.ArgumentTypeError("grant must look like OWNER_ID:AMOUNT")
    try:
        parsed = int(amount)
    except ValueError as exc:
        raise argparse.ArgumentTypeError("grant amount must be an integer") from exc
    if parsed <= 0:
        raise argparse.ArgumentTypeError("grant amount must be positive")
    return owner_id.strip(), parsed


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Seed a world and optional wallet grants into the database.")
    parser.add_argument(
        "--world-file",
        default=str(DEFAULT_WORLD_FILE),
        help="Path to world JSON file.",
    )
    parser.add_argument(
        "--grant",
        action="append",
        default=[],
        type=_parse_grant,
        help="Credit OWNER_ID:AMOUNT to a wallet. Repeatable.",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    result = seed_world(world_file=Path(args.world_file))
    print(f"seeded world slug={result['slug']} created={result['created']} source={result['source_path']}")
    for owner_id, amount in args.grant:
        balance = grant_balance(owner_id=owner_id, amount=amount)
        print(f"granted owner={owner_id} amount={amount} balance={balance}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
