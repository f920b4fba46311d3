from .tenancy import Company
from .wallet import CompanyWallet, WalletTransaction, ReconciliationFlag
from .catalog import MarketplaceApp, MarketplaceAppRequirement, AppBundle, AppBundleItem
from .usage import UsageRecord
from .subscriptions import CompanyAppSubscription, BundleSubscription, PlatformSubscription

__all__ = [
    'Company',
    'CompanyWallet', 'WalletTransaction', 'ReconciliationFlag',
    'MarketplaceApp', 'MarketplaceAppRequirement', 'AppBundle', 'AppBundleItem',
    'UsageRecord',
    'CompanyAppSubscription', 'BundleSubscription', 'PlatformSubscription',
]
