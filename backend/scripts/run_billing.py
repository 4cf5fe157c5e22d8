from cobros.core.logging import configure_logging
from cobros.db.session import SessionLocal
from cobros.services.billing import run_scheduled_billing


def main():
    configure_logging()
    results = run_scheduled_billing(SessionLocal)
    subs = results["subscription_charges"]
    merchants = results["merchant_charges"]
    print(
        "ok: ciclo de cobro completado "
        f"(suscripciones processed={subs['processed']}, successful={subs['successful']}, failed={subs['failed']}, "
        f"skipped={subs['skipped']}; merchants processed={merchants['processed']}, successful={merchants['successful']}, "
        f"failed={merchants['failed']}; errors={len(results['errors'])})"
    )
    for err in results["errors"]:
        print(f"error: {err}")


if __name__ == "__main__":
    main()
