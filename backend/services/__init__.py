from importlib import import_module

__all__ = [
    "ApiKeyPool",
    "MarketDataClient",
    "TradeLedgerEngine",
    "WalletDiscoveryEngine",
    "WalletStore",
    "wallet_store",
    "notifier",
    "build_ledger",
]

_LAZY_EXPORTS = {
    "ApiKeyPool": ("services.key_pool", "ApiKeyPool"),
    "MarketDataClient": ("services.market_data", "MarketDataClient"),
    "TradeLedgerEngine": ("services.trade_ledger", "TradeLedgerEngine"),
    "build_ledger": ("services.trade_ledger", "build_ledger"),
    "WalletDiscoveryEngine": ("services.wallet_discovery", "WalletDiscoveryEngine"),
    "WalletStore": ("services.wallet_store", "WalletStore"),
    "wallet_store": ("services.wallet_store", "wallet_store"),
    "notifier": ("services.notifier", "notifier"),
}


def __getattr__(name):
    if name not in _LAZY_EXPORTS:
        raise AttributeError(f"module 'services' has no attribute {name!r}")

    module_name, attr_name = _LAZY_EXPORTS[name]
    value = getattr(import_module(module_name), attr_name)
    globals()[name] = value
    return value
