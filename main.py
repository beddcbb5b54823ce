#!/usr/bin/env python3
"""
authcore -- Command-line driver for the auth core.

Each command runs one coordinator action against the durable session store
(SESSION_DB_URL) and the local identity provider (USER_DB_URL), then prints
the resulting state.

Usage:
  python main.py status
  python main.py sign-up --name "Asha Rao" --email asha@example.com
  python main.py sign-in --email asha@example.com
  python main.py request-otp 98765 43210
  python main.py verify-otp 123456 --challenge <id>
  python main.py sign-out
  python main.py status --json

Passwords are read with getpass, never from the command line.

Exit codes:
  0  the action succeeded (or status was printed)
  1  the action ended in an Error state
"""

from __future__ import annotations

import argparse
import asyncio
import getpass
import json
import logging
from typing import Optional

from auth.coordinator import AuthCoordinator
from auth.local import build_coordinator
from core.config import get_settings
from core.models import AuthState, EmailPassword, EmailPasswordConfirm, OtpCode, PhoneNumber
from core.validator import FieldKind, mask_email, password_strength, validate


def _print_state(coordinator: AuthCoordinator, state: AuthState, as_json: bool) -> None:
    subject = coordinator.current_subject()
    if as_json:
        payload = {
            "state": state.kind.value,
            "error_kind": state.error_kind.value if state.error_kind else None,
            "message": state.message or None,
            "user_id": subject.subject_id if subject else None,
            "email": subject.email if subject else None,
        }
        print(json.dumps(payload, indent=2))
        return

    if state.is_error:
        print(f"  [!] {state.message} ({state.error_kind.value})")
    elif state.is_authenticated and subject is not None:
        who = mask_email(subject.email) if subject.email else subject.subject_id
        print(f"  Signed in as {who}")
    else:
        print(f"  {state.kind.value.capitalize()}")


def _read_password(prompt: str) -> str:
    return getpass.getpass(f"  {prompt}: ")


async def _run(args: argparse.Namespace) -> int:
    settings = get_settings()
    coordinator, users = build_coordinator(settings)
    try:
        state = await coordinator.start()

        if args.command == "sign-in":
            state = await coordinator.sign_in(EmailPassword(args.email, _read_password("Password")))

        elif args.command == "sign-up":
            password = _read_password("Password")
            # Show strength before asking for confirmation, like the sign-up form.
            if validate(FieldKind.PASSWORD, password).ok:
                print(f"  Password strength: {password_strength(password).value.lower()}")
            confirm = _read_password("Confirm password")
            state = await coordinator.sign_up(EmailPasswordConfirm(args.name, args.email, password, confirm))

        elif args.command == "request-otp":
            state = await coordinator.request_otp(PhoneNumber(" ".join(args.phone)))
            challenge = coordinator.pending_challenge()
            if not state.is_error and challenge and not args.json:
                print(f"  Code sent to {(await coordinator.current_session()).phone}")
                print(f"  Challenge: {challenge}")
                print(f"  Next: python main.py verify-otp <code> --challenge {challenge}")

        elif args.command == "verify-otp":
            state = await coordinator.verify_otp(OtpCode(" ".join(args.code), args.challenge))

        elif args.command == "sign-out":
            state = await coordinator.sign_out()

        _print_state(coordinator, state, args.json)
        return 1 if state.is_error else 0
    finally:
        coordinator.store.close()
        users.close()


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="authcore",
        description="Sign in, sign up and manage the device session.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py sign-up --name "Asha Rao" --email asha@example.com
  python main.py sign-in --email asha@example.com
  python main.py request-otp +91 98765 43210
  python main.py verify-otp 123456 --challenge <id>
  python main.py sign-out
        """,
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the resulting state as JSON",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log at DEBUG level",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    sub.add_parser("status", help="Show the current session state")

    p_in = sub.add_parser("sign-in", help="Sign in with email and password")
    p_in.add_argument("--email", required=True)

    p_up = sub.add_parser("sign-up", help="Create an account and sign in")
    p_up.add_argument("--name", required=True)
    p_up.add_argument("--email", required=True)

    p_otp = sub.add_parser("request-otp", help="Send a one-time code to a phone number")
    p_otp.add_argument("phone", nargs="+", metavar="PHONE", help="Phone number; spaces allowed")

    p_verify = sub.add_parser("verify-otp", help="Complete phone sign-in with the code")
    p_verify.add_argument("code", nargs="+", metavar="CODE", help="The 6-digit code; spaces allowed")
    p_verify.add_argument("--challenge", required=True, metavar="ID", help="Challenge id printed by request-otp")

    sub.add_parser("sign-out", help="End the session")

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 0

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    return asyncio.run(_run(args))


if __name__ == "__main__":
    raise SystemExit(main())
