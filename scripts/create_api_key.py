from __future__ import annotations

import argparse
import asyncio
import sys

from botforge.core.logging import configure_logging
from botforge.persistence.db import SessionLocal
from botforge.persistence.repos import authz as authz_repo
from botforge.persistence.repos import users as users_repo
from botforge.services import audit
from botforge.services.audit import record_event
from botforge.services.auth.api_keys import issue_api_key
from botforge.services.authz.catalog import seed_default_roles


def _build_parser() -> argparse.ArgumentParser:
    # Keep CLI arguments explicit to avoid accidental key misuse.
    parser = argparse.ArgumentParser(description="Create an API key for a user")
    parser.add_argument("--email", required=True, help="User email; the user is created when missing")
    parser.add_argument("--name", required=True, help="Key label for auditing")
    parser.add_argument(
        "--role",
        action="append",
        default=[],
        help="Role name to grant to a newly created user (repeatable, default: user)",
    )
    return parser


async def _create_key(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        roles = await seed_default_roles(session)
        users = await users_repo.get_users_by_emails(session, [args.email])
        user = users.get(args.email.strip().lower())
        if user is None:
            user = await users_repo.create_user(session, email=args.email)
            role_ids: list[str] = []
            for role_name in args.role or ["user"]:
                role = roles.get(role_name) or await authz_repo.get_role_by_name(session, role_name)
                if role is None:
                    raise ValueError(f"Unknown role: {role_name}")
                role_ids.append(role.id)
            await authz_repo.replace_user_roles(session, user_id=user.id, role_ids=role_ids)

        api_key, raw_key = await issue_api_key(session, user_id=user.id, name=args.name)
        await record_event(
            session=session,
            actor_id="create_api_key",
            event_type=audit.API_KEY_CREATED,
            outcome="success",
            resource_type="api_key",
            resource_id=api_key.id,
            metadata={"user_id": user.id, "key_prefix": api_key.key_prefix, "key_name": args.name},
        )
        await session.commit()

    print("API key created:")
    print(f"  user_id: {user.id}")
    print(f"  key_id: {api_key.id}")
    print(f"  key_prefix: {api_key.key_prefix}")
    print("  api_key: ")
    print(f"    {raw_key}")
    return 0


def main() -> int:
    configure_logging()
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_create_key(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_api_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
