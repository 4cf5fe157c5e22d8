from cobros.core.config import settings
from cobros.core.logging import configure_logging
from cobros.db.session import SessionLocal
from cobros.services.billing import stale_processing_invoices


def main():
    configure_logging()
    db = SessionLocal()
    try:
        rows = stale_processing_invoices(db)
        for inv in rows:
            print(
                f"{inv.id} subscription={inv.subscription_id} ref={inv.gateway_reference} "
                f"gateway={inv.gateway} attempt={inv.attempt_count + 1} updated_at={inv.updated_at.isoformat()}"
            )
        print(f"ok: {len(rows)} facturas en processing por mas de {settings.BILLING_PROCESSING_STALE_MINUTES} minutos")
    finally:
        db.close()


if __name__ == "__main__":
    main()
