"""Tenant management CLI commands."""

import argparse
import asyncio
import sys
from collections.abc import Awaitable, Callable

from katanaci.app.config import get_settings
from katanaci.app.logging import key_prefix
from katanaci.core.errors import TenantAlreadyExistsError, TenantHasInstancesError
from katanaci.infra.database import close_db, get_session_factory, init_db
from katanaci.services.credentials import CredentialStore
from katanaci.services.registry import InstanceRegistry
from katanaci.services.seed import SeedFileError, seed_tenants


async def add_tenant(store: CredentialStore, name: str, api_key: str | None) -> None:
    """Register a tenant and print its API key."""
    try:
        tenant = await store.add(name, api_key)
    except TenantAlreadyExistsError:
        print(f"Error: API key for '{name}' is already registered")
        sys.exit(1)
    print(f"Tenant '{tenant.user_name}' created")
    print(f"API key: {tenant.api_key}")


async def list_tenants(
    store: CredentialStore, registry: InstanceRegistry, show_keys: bool = False
) -> None:
    """List all tenants with their live instance count."""
    tenants = await store.list_all()
    if not tenants:
        print("No tenants found")
        return

    print(f"{'Name':<24} {'API key':<40} {'Instances':>9}")
    print("-" * 75)
    for tenant in tenants:
        instances = await registry.list_for_tenant(tenant.api_key)
        key = tenant.api_key if show_keys else key_prefix(tenant.api_key)
        print(f"{tenant.user_name:<24} {key:<40} {len(instances):>9}")


async def remove_tenant(store: CredentialStore, api_key: str) -> None:
    """Delete a tenant that owns no instances."""
    try:
        removed = await store.remove(api_key)
    except TenantHasInstancesError as e:
        print(f"Error: {e}; stop them first")
        sys.exit(1)
    if not removed:
        print(f"Error: No tenant with API key {key_prefix(api_key)}")
        sys.exit(1)
    print("Tenant removed")


async def load_tenants(store: CredentialStore, path: str) -> None:
    """Register tenants from a ``name,api_key`` file."""
    try:
        added = await seed_tenants(store, path)
    except SeedFileError as e:
        print(f"Error: {e}")
        sys.exit(1)
    print(f"Loaded {added} new tenant(s) from {path}")


async def _run(command: Callable[[CredentialStore, InstanceRegistry], Awaitable[None]]) -> None:
    settings = get_settings()
    await init_db(
        settings.database.url,
        echo=settings.database.echo,
        busy_timeout_ms=settings.database.busy_timeout_ms,
    )
    try:
        session_factory = get_session_factory()
        await command(CredentialStore(session_factory), InstanceRegistry(session_factory))
    finally:
        await close_db()


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="katana-ci tenant management",
        prog="katana-ci-tenant",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    add_parser = subparsers.add_parser("add", help="Register a tenant")
    add_parser.add_argument("name", help="Tenant name")
    add_parser.add_argument(
        "--api-key", "-k",
        help="API key to register (generated if not provided)",
    )

    list_parser = subparsers.add_parser("list", help="List tenants")
    list_parser.add_argument(
        "--show-keys",
        action="store_true",
        help="Print full API keys instead of prefixes",
    )

    remove_parser = subparsers.add_parser("remove", help="Remove a tenant")
    remove_parser.add_argument("api_key", help="API key of the tenant to remove")

    load_parser = subparsers.add_parser("load", help="Load tenants from a name,api_key file")
    load_parser.add_argument("path", help="Path to the tenants file")

    args = parser.parse_args(argv)

    if args.command == "add":
        asyncio.run(_run(lambda store, _: add_tenant(store, args.name, args.api_key)))

    elif args.command == "list":
        asyncio.run(
            _run(lambda store, registry: list_tenants(store, registry, args.show_keys))
        )

    elif args.command == "remove":
        asyncio.run(_run(lambda store, _: remove_tenant(store, args.api_key)))

    elif args.command == "load":
        asyncio.run(_run(lambda store, _: load_tenants(store, args.path)))


if __name__ == "__main__":
    main()
