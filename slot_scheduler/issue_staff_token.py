"""Print a bearer token for an existing staff user.

Usage:
    python -m slot_scheduler.issue_staff_token staff@example.com
"""
import sys

from slot_scheduler.auth.jwt_handler import create_access_token
from slot_scheduler.database import SessionLocal
from slot_scheduler.models.user import STAFF_ROLES, StaffUser


def main(argv: list[str] | None = None) -> None:
    args = sys.argv[1:] if argv is None else argv
    if len(args) != 1:
        print("Usage: python -m slot_scheduler.issue_staff_token EMAIL", file=sys.stderr)
        sys.exit(2)

    email = args[0].strip().lower()
    db = SessionLocal()
    try:
        user = db.query(StaffUser).filter(StaffUser.email == email).first()
    finally:
        db.close()

    if user is None or user.role not in STAFF_ROLES:
        print(f"No staff user with email {email}", file=sys.stderr)
        sys.exit(1)

    print(create_access_token(subject=user.email, establishment_id=user.establishment_id))


if __name__ == "__main__":
    main()
