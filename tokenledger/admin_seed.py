"""Dev seed script — provisions a local user and prints a session token.

Bypasses the identity provider and Stripe so the API can be exercised
locally with curl.

Usage:
    python -m tokenledger.admin_seed [user_id]
"""

import asyncio
import sys


async def main(user_id: str = "user_local_admin"):
    # Ensure .env is loaded before importing settings
    from dotenv import load_dotenv
    load_dotenv()

    from tokenledger.config import get_settings
    from tokenledger.db.session import Database
    from tokenledger.services.auth_service import create_jwt
    from tokenledger.services.ledger_service import provision

    settings = get_settings()
    database = Database(settings.database_url)
    await database.create_all()

    async with database.session() as db:
        sub, created = await provision(db, user_id)

    token = create_jwt(user_id, name="Local Admin", email="admin@localhost")

    if created:
        print(f"Provisioned {user_id} with {sub.token} tokens")
    else:
        print(f"{user_id} already exists ({sub.token} tokens)")
    print()
    print("Next steps:")
    print("  1. Start the API:  uvicorn tokenledger.app:app --reload")
    print(f"  2. curl -H 'Authorization: Bearer {token}' {settings.app_url}/api/tokens")

    await database.dispose()


if __name__ == "__main__":
    asyncio.run(main(*sys.argv[1:2]))
