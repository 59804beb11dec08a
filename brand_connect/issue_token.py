"""Print a signed access token for an existing user to stdout.

Usage:
    python -m brand_connect.issue_token creative@example.com
"""
import sys

from brand_connect.auth.jwt_handler import create_access_token
from brand_connect.database import SessionLocal
from brand_connect.models.user import User


def main(argv: list[str] | None = None) -> None:
    args = sys.argv[1:] if argv is None else argv
    if len(args) != 1:
        print("Usage: python -m brand_connect.issue_token <email>", file=sys.stderr)
        sys.exit(2)

    email = args[0].strip().lower()
    db = SessionLocal()
    try:
        user = db.query(User).filter(User.email == email).first()
    finally:
        db.close()

    if user is None:
        print(f"No user with email {email}", file=sys.stderr)
        sys.exit(1)

    print(create_access_token(subject=user.email, role=user.role))


if __name__ == "__main__":
    main()
