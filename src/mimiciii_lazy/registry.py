from typing import Callable, Dict

_registry: Dict[str, Callable] = {}


def registry(name: str):
    """Decorator to register a plan builder globally in the package registry."""

    def _decorator(fn: Callable):
        _registry[name] = fn
        return fn

    return _decorator


def lookup(name: str) -> Callable:
    if name not in _registry:
        raise KeyError(f"Query '{name}' not found.")
    return _registry[name]
