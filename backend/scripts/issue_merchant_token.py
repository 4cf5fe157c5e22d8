import sys

import sqlalchemy as sa

from cobros.core.security import create_merchant_token
from cobros.db.session import SessionLocal
from cobros.models import Merchant


def main():
    if len(sys.argv) != 2:
        print("uso: python scripts/issue_merchant_token.py <merchant-slug>")
        sys.exit(2)
    db = SessionLocal()
    try:
        merchant = db.execute(sa.select(Merchant).where(Merchant.slug == sys.argv[1])).scalars().first()
        if merchant is None:
            print("error: merchant no encontrado")
            sys.exit(1)
        print(create_merchant_token(str(merchant.id)))
    finally:
        db.close()


if __name__ == "__main__":
    main()
