#!/usr/bin/env python3
"""Register an identity against a running StepGuard server.

Starts registration, prompts for the passcode delivered on the chosen
channel, and verifies it. Prints the subject id and a truncated access token.

Usage:
    # Using environment variables:
    IDENTITY_EMAIL=user@example.com IDENTITY_PASSWORD=SecurePassword123! python scripts/create_identity.py

    # Or with command line args:
    python scripts/create_identity.py --email user@example.com --password SecurePassword123! \\
        --phone +6285800650661 --channel messaging

Environment Variables:
    STEPGUARD_URL: Base URL of the server (default http://localhost:8000)
    IDENTITY_EMAIL: Email for the new identity
    IDENTITY_PASSWORD: Password for the new identity
"""
from __future__ import annotations

import argparse
import getpass
import os
import sys

import httpx


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def _unwrap(response: httpx.Response) -> dict:
    body = response.json()
    if body.get("status") != "ok":
        error = body.get("error") or {}
        raise RuntimeError(f"{error.get('code', 'error')}: {error.get('message', 'request failed')}")
    return body["data"]


def create_identity(
    client: httpx.Client,
    email: str,
    password: str,
    *,
    phone: str | None,
    channel: str,
    dry_run: bool = False,
) -> dict:
    """Run registration and passcode verification over HTTP.

    Returns:
        dict with subject_id, email, and status ('created' or 'dry_run')
    """
    if dry_run:
        print(f"[DRY RUN] Would register {email} and verify via {channel}")
        return {"subject_id": None, "email": email, "status": "dry_run"}

    payload = {"email": email, "password": password, "channels": [channel]}
    if phone:
        payload["phone"] = phone
    started = _unwrap(client.post("/v1/auth/register", json=payload))
    for entry in started["channels"]:
        state = "sent" if entry["delivered"] else "NOT delivered"
        print(f"  {entry['channel']}: {entry['destination']} ({state})")
    print(f"  Code expires at {started['expires_at']}")

    code = input("Enter the 6-digit code: ").strip()
    verified = _unwrap(
        client.post(
            "/v1/auth/verify",
            json={"session_id": started["session_id"], "code": code, "channel": channel},
        )
    )
    return {
        "subject_id": verified["subject_id"],
        "email": email,
        "status": "created",
        "access_token": verified["tokens"]["access_token"],
    }


def main():
    parser = argparse.ArgumentParser(
        description="Register an identity with StepGuard",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--url",
        default=os.environ.get("STEPGUARD_URL", "http://localhost:8000"),
        help="Server base URL (or set STEPGUARD_URL env var)",
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("IDENTITY_EMAIL"),
        help="Identity email (or set IDENTITY_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("IDENTITY_PASSWORD"),
        help="Identity password (or set IDENTITY_PASSWORD env var; prompted otherwise)",
    )
    parser.add_argument("--phone", default=None, help="Phone number for the messaging channel")
    parser.add_argument(
        "--channel",
        choices=["email", "messaging"],
        default="email",
        help="Channel to receive the passcode on",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or IDENTITY_EMAIL environment variable required")
        sys.exit(1)

    password = args.password or getpass.getpass("Password: ")
    if not validate_password(password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    if args.channel == "messaging" and not args.phone:
        print("Error: --phone is required for the messaging channel")
        sys.exit(1)

    try:
        with httpx.Client(base_url=args.url, timeout=30.0) as client:
            result = create_identity(
                client,
                args.email,
                password,
                phone=args.phone,
                channel=args.channel,
                dry_run=args.dry_run,
            )
    except (httpx.HTTPError, RuntimeError, KeyError, ValueError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nIdentity created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Subject ID: {result['subject_id']}")
        if result.get("access_token"):
            print(f"  Access Token: {result['access_token'][:50]}...")


if __name__ == "__main__":
    main()
