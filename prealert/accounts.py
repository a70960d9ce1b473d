#!/usr/bin/env python3
"""Provision sign-in accounts out of band.

Nothing in the HTTP API creates users. Run this against the same database
the service uses:

  - Local account with a password (no SUPABASE_URL configured):
      python -m prealert.accounts citycare hospital --linked-entity hosp-citycare --password s3cret

  - Link an identity that already exists in Supabase:
      python -m prealert.accounts amb001 ambulance --linked-entity amb-001 --auth-uid 5b0c...
"""
from __future__ import annotations

import argparse
import asyncio
import getpass
import logging
import uuid

from prealert.config import Settings
from prealert.dependencies import Services, build_services
from prealert.errors import InvalidArgument, NotFound, PrealertError
from prealert.models.session import AppUser
from prealert.services.identity import LocalIdentityProvider
from prealert.services.sessions import to_login_email

logger = logging.getLogger(__name__)

ROLES = ("hospital", "ambulance", "admin")


async def _check_linked_entity(services: Services, role: str, linked_entity: str | None) -> None:
    if role == "admin":
        return
    if not linked_entity:
        raise InvalidArgument(f"A {role} account needs a linked entity")
    if role == "hospital" and await services.store.get_hospital(linked_entity) is None:
        raise NotFound(f"Hospital {linked_entity} not found")
    if role == "ambulance" and await services.store.get_ambulance(linked_entity) is None:
        raise NotFound(f"Ambulance {linked_entity} not found")


async def provision_account(
    services: Services,
    username: str,
    role: str,
    linked_entity: str | None = None,
    *,
    password: str | None = None,
    auth_uid: str | None = None,
) -> AppUser:
    """Create the app_users row that gives ``username`` a role.

    Without ``auth_uid`` a local credential is registered first, which only
    works with the built-in identity provider.
    """
    username = username.strip()
    if not username or "@" in username:
        raise InvalidArgument("Username must be a bare name")
    if role not in ROLES:
        raise InvalidArgument(f"Unknown role {role!r}")
    await _check_linked_entity(services, role, linked_entity)

    if auth_uid is None:
        if not isinstance(services.identity, LocalIdentityProvider):
            raise InvalidArgument("External identity provider in use; pass the existing auth uid")
        email = to_login_email(username, services.settings.internal_email_domain)
        auth_uid = await services.identity.register(email, password or "")

    user = await services.store.insert_user(AppUser(
        id=f"user-{uuid.uuid4().hex[:12]}",
        username=username,
        auth_uid=auth_uid,
        role=role,
        linked_entity=linked_entity if role != "admin" else None,
    ))
    logger.info("Provisioned %s account %s", role, username)
    return user


async def _run(args: argparse.Namespace) -> AppUser:
    services = await build_services(Settings())
    try:
        return await provision_account(
            services,
            args.username,
            args.role,
            args.linked_entity,
            password=args.password,
            auth_uid=args.auth_uid,
        )
    finally:
        await services.close()


def main(argv: list[str] | None = None) -> int:
    ap = argparse.ArgumentParser(description="Create a pre-alert sign-in account")
    ap.add_argument("username", help="Bare username, signs in as username@INTERNAL_EMAIL_DOMAIN")
    ap.add_argument("role", choices=ROLES)
    ap.add_argument("--linked-entity", help="Hospital id or ambulance id the account acts for")
    ap.add_argument("--password", help="Password for a local account (prompted when omitted)")
    ap.add_argument("--auth-uid", help="Existing identity provider uid to link instead of a local password")
    args = ap.parse_args(argv)

    if args.auth_uid is None and args.password is None:
        args.password = getpass.getpass(f"Password for {args.username}: ")

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    try:
        user = asyncio.run(_run(args))
    except PrealertError as exc:
        print(f"! {exc.message}")
        return 1
    print(f"[CREATED] {user.username} ({user.role}{', ' + user.linked_entity if user.linked_entity else ''})")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
