"""Proving backends and registry."""

from .openvm import StarkZkvmBackend
from .zkwasm import FoldingWasmBackend

ADAPTERS = {
    FoldingWasmBackend.name: FoldingWasmBackend,
    StarkZkvmBackend.name: StarkZkvmBackend,
}


def get_adapter_cls(name: str):
    try:
        return ADAPTERS[name]
    except KeyError:
        raise KeyError(f"unknown backend {name!r}; available: {', '.join(sorted(ADAPTERS))}") from None


__all__ = ["ADAPTERS", "FoldingWasmBackend", "StarkZkvmBackend", "get_adapter_cls"]
