"""JSON snapshot export/import of the Users and Subscriptions collections.

Layout matches the flat key → record files the service historically kept on
disk: ``users.json`` keyed by email, ``subscriptions.json`` keyed by
subscription id, with index entries under ``email:<address>`` keys mapping
each id to ``true``.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path

from pydantic import ValidationError

from topvoices.models import Subscription, User
from topvoices.storage.container import Storage

logger = logging.getLogger(__name__)

USERS_FILE = "users.json"
SUBSCRIPTIONS_FILE = "subscriptions.json"
EMAIL_KEY_PREFIX = "email:"


@dataclass
class SnapshotCounts:
    users: int = 0
    subscriptions: int = 0
    index_entries: int = 0
    skipped: int = 0


async def export_snapshot(storage: Storage, directory: str | Path) -> SnapshotCounts:
    out = Path(directory)
    out.mkdir(parents=True, exist_ok=True)
    counts = SnapshotCounts()

    users = await storage.users.get_all()
    users_data = {email: user.to_record() for email, user in users.items()}
    counts.users = len(users_data)

    subscriptions = await storage.subscriptions.get_all()
    subs_data: dict[str, dict] = {sid: sub.to_record() for sid, sub in subscriptions.items()}
    counts.subscriptions = len(subs_data)
    for email, ids in (await storage.subscriptions.index_entries()).items():
        subs_data[f"{EMAIL_KEY_PREFIX}{email}"] = {sid: True for sid in sorted(ids)}
        counts.index_entries += len(ids)

    (out / USERS_FILE).write_text(json.dumps(users_data, indent=2))
    (out / SUBSCRIPTIONS_FILE).write_text(json.dumps(subs_data, indent=2))
    logger.info(
        "Exported %d users, %d subscriptions to %s", counts.users, counts.subscriptions, out,
    )
    return counts


def _read(path: Path) -> dict:
    if not path.exists():
        return {}
    return json.loads(path.read_text() or "{}")


async def import_snapshot(storage: Storage, directory: str | Path) -> SnapshotCounts:
    """Load a snapshot, upserting records and merging exported index entries.

    Records that fail validation are skipped and logged, not fatal.
    """
    src = Path(directory)
    counts = SnapshotCounts()

    for key, value in _read(src / SUBSCRIPTIONS_FILE).items():
        if key.startswith(EMAIL_KEY_PREFIX):
            email = key[len(EMAIL_KEY_PREFIX):]
            for sid, present in (value or {}).items():
                if present:
                    await storage.subscriptions.add_index_entry(email, sid)
                    counts.index_entries += 1
            continue
        try:
            sub = Subscription.model_validate({**value, "id": value.get("id") or key})
        except ValidationError as e:
            logger.warning("Skipping invalid subscription %s: %s", key, e)
            counts.skipped += 1
            continue
        await storage.subscriptions.set(key, sub)
        counts.subscriptions += 1

    for key, value in _read(src / USERS_FILE).items():
        try:
            user = User.model_validate({**value, "email": value.get("email") or key})
        except ValidationError as e:
            logger.warning("Skipping invalid user %s: %s", key, e)
            counts.skipped += 1
            continue
        await storage.users.set(user.email, user)
        counts.users += 1

    logger.info(
        "Imported %d users, %d subscriptions (%d skipped) from %s",
        counts.users, counts.subscriptions, counts.skipped, src,
    )
    return counts
