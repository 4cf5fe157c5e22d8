from fastapi import APIRouter, Depends

from cobros.api.deps import get_notifier_dep, get_session_factory, require_cron
from cobros.core.security import now_utc
from cobros.schemas.billing import BillingRunOut
from cobros.services.billing import run_scheduled_billing

router = APIRouter()


def _run(session_factory, notifier) -> BillingRunOut:
    now = now_utc()
    results = run_scheduled_billing(session_factory, now=now, notifier=notifier)
    return BillingRunOut(success=True, timestamp=now, results=results)


@router.get("/billing", response_model=BillingRunOut)
def cron_billing(
    _source: str = Depends(require_cron),
    session_factory=Depends(get_session_factory),
    notifier=Depends(get_notifier_dep),
):
    return _run(session_factory, notifier)


@router.post("/billing", response_model=BillingRunOut)
def cron_billing_manual(
    _source: str = Depends(require_cron),
    session_factory=Depends(get_session_factory),
    notifier=Depends(get_notifier_dep),
):
    return _run(session_factory, notifier)
