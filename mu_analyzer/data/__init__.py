from .filter import FilterError, FilterPredicate, compile_filter
from .view import PacketView
from .connections import ConnectionList

__all__ = [
    "FilterError", "FilterPredicate", "compile_filter",
    "PacketView", "ConnectionList",
]
