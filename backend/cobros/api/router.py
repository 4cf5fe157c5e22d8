from fastapi import APIRouter
from cobros.modules.billing import api as billing
from cobros.modules.cron import api as cron
from cobros.modules.merchants import api as merchants
from cobros.modules.subscriptions import api as subscriptions
from cobros.modules.webhooks import api as webhooks

router = APIRouter()
router.include_router(cron.router, prefix="/cron", tags=["cron"])
router.include_router(billing.router, prefix="/billing", tags=["billing"])
router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
router.include_router(merchants.router, prefix="/merchants", tags=["merchants"])
router.include_router(subscriptions.router, prefix="/subscriptions", tags=["subscriptions"])
