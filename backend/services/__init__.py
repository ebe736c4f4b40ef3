from importlib import import_module

__all__ = [
    "CopyTradeService",
    "CopyTradePoller",
    "ExecutionDeduplicator",
    "OrderMutationHandler",
    "RealtimeCopyMonitor",
]

# Singletons share their submodule's name, so only classes are exported here;
# import singletons from the submodule itself.
_LAZY_EXPORTS = {
    "CopyTradeService": ("services.copy_trader", "CopyTradeService"),
    "CopyTradePoller": ("services.copy_trade_poller", "CopyTradePoller"),
    "ExecutionDeduplicator": ("services.execution_dedup", "ExecutionDeduplicator"),
    "OrderMutationHandler": ("services.order_mutations", "OrderMutationHandler"),
    "RealtimeCopyMonitor": ("services.realtime_copy", "RealtimeCopyMonitor"),
}


def __getattr__(name):
    if name not in _LAZY_EXPORTS:
        raise AttributeError(f"module 'services' has no attribute {name!r}")

    module_name, attr_name = _LAZY_EXPORTS[name]
    module = import_module(module_name)
    value = getattr(module, attr_name)
    globals()[name] = value
    return value
