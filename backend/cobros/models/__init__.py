from cobros.models.merchant import Merchant
from cobros.models.plan import Plan
from cobros.models.customer import Customer
from cobros.models.payment_method import PaymentMethod
from cobros.models.subscription import Subscription
from cobros.models.invoice import Invoice, InvoiceAttempt, PlatformInvoice
from cobros.models.webhook_event import GatewayWebhookEvent
from cobros.models.audit_log import AuditLog
