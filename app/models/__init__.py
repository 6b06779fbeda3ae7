from app.models.api_key import ApiKey
from app.models.audit_log import AuditLog
from app.models.credit_transaction import CreditTransaction
from app.models.custom_agent import CustomAgent
from app.models.failed_job import FailedJob
from app.models.gateway_job import GatewayJob
from app.models.payment import Payment
from app.models.user import User

__all__ = [
    "ApiKey",
    "AuditLog",
    "CreditTransaction",
    "CustomAgent",
    "FailedJob",
    "GatewayJob",
    "Payment",
    "User",
]
