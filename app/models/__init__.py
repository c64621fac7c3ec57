from app.models.account import Account
from app.models.provider_credential import ProviderCredential
from app.models.usage_record import UsageRecord

__all__ = [
    "Account",
    "ProviderCredential",
    "UsageRecord",
]
