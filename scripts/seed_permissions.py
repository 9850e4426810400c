"""Seed the permission catalog and built-in role defaults."""

from __future__ import annotations

import argparse

from socialflow.operations.bootstrap import seed_authorization
from socialflow.storage.db import get_session_factory, load_models


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed SocialFlow permissions and role defaults.")
    parser.add_argument(
        "--reset-role-defaults",
        action="store_true",
        help="Replace stored role defaults with the contents of the role permissions file.",
    )
    args = parser.parse_args()

    load_models()
    session = get_session_factory()()
    try:
        report = seed_authorization(session, reset_role_defaults=args.reset_role_defaults)
    finally:
        session.close()

    print(f"permissions_created={report.permissions_created}")
    print(f"role_permissions_created={report.role_permissions_created}")


if __name__ == "__main__":
    main()
