"""Tenant seeding from a flat ``name,api_key`` file."""

import logging
from dataclasses import dataclass
from pathlib import Path

from katanaci.app.logging import key_prefix
from katanaci.core.errors import TenantAlreadyExistsError
from katanaci.core.logging_schema import LogEvent
from katanaci.services.credentials import CredentialStore

logger = logging.getLogger(__name__)


class SeedFileError(ValueError):
    """The seed file is unreadable or has a malformed line."""


@dataclass(frozen=True)
class SeedEntry:
    user_name: str
    api_key: str


def parse_seed_file(path: str | Path) -> list[SeedEntry]:
    """Parse a seed file.

    One ``name,api_key`` pair per line. Blank lines and ``#`` comments are
    skipped; any other malformed line rejects the whole file.

    Raises:
        SeedFileError: File missing or malformed
    """
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise SeedFileError(f"Cannot read tenant file {path}: {e}") from e

    entries = []
    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        parts = line.split(",")
        if len(parts) != 2:
            raise SeedFileError(
                f"{path}:{lineno}: expected 'name,api_key', got {len(parts)} field(s)"
            )
        user_name, api_key = (p.strip() for p in parts)
        if not user_name or not api_key:
            raise SeedFileError(f"{path}:{lineno}: name and api_key must be non-empty")
        entries.append(SeedEntry(user_name=user_name, api_key=api_key))
    return entries


async def seed_tenants(store: CredentialStore, path: str | Path) -> int:
    """Register every tenant of the file, skipping keys already present.

    Returns:
        Number of tenants added
    """
    entries = parse_seed_file(path)
    added = 0
    for entry in entries:
        try:
            await store.add(entry.user_name, entry.api_key)
            added += 1
        except TenantAlreadyExistsError:
            logger.info(
                "Tenant already registered, skipping: %s",
                entry.user_name,
                extra={"tenant": entry.user_name, "key_prefix": key_prefix(entry.api_key)},
            )

    logger.info(
        "Seeded %d/%d tenants from %s",
        added,
        len(entries),
        path,
        extra={"event": LogEvent.TENANTS_SEEDED, "added": added, "total": len(entries)},
    )
    return added
