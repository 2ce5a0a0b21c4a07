import argparse

from dotenv import load_dotenv

from app.db import SessionLocal
from app.models.user import User
from app.services.auth import create_access_token
from app.services.system_settings import system_settings


def parse_args():
    parser = argparse.ArgumentParser(description="Seed an admin user.")
    parser.add_argument("--username", required=True)
    parser.add_argument("--email", required=True)
    parser.add_argument("--display-name", default=None)
    parser.add_argument("--issue-token", action="store_true")
    return parser.parse_args()


def main():
    load_dotenv()
    args = parse_args()
    db = SessionLocal()
    try:
        system_settings.initialize_defaults(db)
        user = db.query(User).filter(User.username == args.username).first()
        if user:
            if not user.is_admin:
                user.is_admin = True
                db.commit()
                print("Existing user promoted to admin.")
            else:
                print("Admin user already exists.")
        else:
            user = User(
                username=args.username,
                email=args.email.strip().lower(),
                display_name=args.display_name or args.username,
                is_admin=True,
            )
            db.add(user)
            db.commit()
            db.refresh(user)
            print("Admin user created.")
        if args.issue_token:
            print(create_access_token(user))
    finally:
        db.close()


if __name__ == "__main__":
    main()
