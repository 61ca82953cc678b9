"""Create an admin account, or promote an existing user to admin.

Run with ``python -m backend.create_admin`` from the project root.
"""

import getpass
from datetime import datetime

import bcrypt
from pymongo import MongoClient

from .settings import Settings


def upsert_admin(db, email: str, password: str, display_name: str = "Admin") -> str:
    """Create ``email`` as an admin or promote it; returns ``"created"`` or ``"promoted"``."""
    email = email.strip().lower()
    hashed_pw = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())

    existing = db.users.find_one({"email": email})
    if existing:
        db.users.update_one(
            {"_id": existing["_id"]},
            {"$set": {"is_admin": True, "password": hashed_pw}},
        )
        return "promoted"

    insert_result = db.users.insert_one(
        {
            "email": email,
            "password": hashed_pw,
            "display_name": display_name,
            "is_admin": True,
            "created_at": datetime.utcnow(),
        }
    )
    user_id = str(insert_result.inserted_id)
    db.profiles.insert_one({"user_id": user_id, "email": email, "display_name": display_name})
    db.carts.insert_one({"user_id": user_id, "items": []})
    return "created"


def main():
    settings = Settings.from_env()
    client = MongoClient(settings.mongo_uri)
    db = client.get_default_database("prismhold")

    email = input("Admin email: ").strip()
    if not email:
        print("Email is required.")
        return
    password = getpass.getpass("Admin password: ")
    if len(password) < 6:
        print("Password must be at least 6 characters.")
        return
    display_name = input("Display name [Admin]: ").strip() or "Admin"

    outcome = upsert_admin(db, email, password, display_name)
    print(f"Admin account {email} {outcome}.")
    client.close()


if __name__ == "__main__":
    main()
