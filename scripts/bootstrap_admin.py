#!/usr/bin/env python3
"""Emit deterministic SQL that promotes a first operator in both identity stores."""

from __future__ import annotations

import argparse

ROLES = ("standard", "admin", "content_admin", "editor", "writer")


def _quote_sql(value: str) -> str:
    escaped = value.replace("'", "''")
    return f"'{escaped}'"


def render_sql(*, role: str, user_id: str | None, email: str | None) -> str:
    role_value = _quote_sql(role)
    provider_role_value = _quote_sql("admin" if role == "admin" else "user")

    if user_id:
        target_where = f"id = {_quote_sql(user_id)}::uuid"
    else:
        assert email is not None
        target_where = f"lower(email) = lower({_quote_sql(email)})"

    return f"""-- Identity sync operator bootstrap SQL
-- Run this in a privileged Postgres session against the provider database.

update auth.users
set raw_app_meta_data = coalesce(raw_app_meta_data, '{{}}'::jsonb) || jsonb_build_object('role', {provider_role_value})
where {target_where};

insert into users (external_id, email, role)
select id::text, lower(email), {role_value}
from auth.users
where {target_where}
on conflict ((lower(email))) do update
set
  role = excluded.role,
  external_id = coalesce(users.external_id, excluded.external_id),
  is_active = true,
  updated_at = now();
"""


def main() -> None:
    parser = argparse.ArgumentParser(description="Emit SQL to bootstrap an identity sync operator.")
    parser.add_argument(
        "--role",
        choices=list(ROLES),
        default="admin",
        help="Canonical role to assign; the provider metadata role becomes admin or user",
    )
    identity_group = parser.add_mutually_exclusive_group(required=True)
    identity_group.add_argument("--user-id", help="Provider auth.users id (UUID)")
    identity_group.add_argument("--email", help="Provider auth.users email")
    args = parser.parse_args()

    print(render_sql(role=args.role, user_id=args.user_id, email=args.email))


if __name__ == "__main__":
    main()
