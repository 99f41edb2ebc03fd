from __future__ import annotations

import argparse
import asyncio
import sys

from botforge.core.logging import configure_logging
from botforge.persistence.db import SessionLocal
from botforge.persistence.repos import authz as authz_repo
from botforge.services.authz.catalog import seed_default_roles


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Seed the permission catalog and the system roles")
    parser.add_argument("--list", action="store_true", help="Print the seeded roles and permission counts")
    return parser


async def _seed(args: argparse.Namespace) -> int:
    # Idempotent: re-running only inserts what is missing.
    async with SessionLocal() as session:
        roles = await seed_default_roles(session)
        await session.commit()
        if args.list:
            for name, role in sorted(roles.items()):
                permissions = await authz_repo.list_role_permissions(session, role.id)
                print(f"{name}: {len(permissions)} permissions")
    print("rbac seed complete")
    return 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_seed(args))
    except Exception as exc:  # noqa: BLE001 - surface seed failures clearly
        print(f"seed_rbac failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
