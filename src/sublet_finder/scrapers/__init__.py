"""Search strategies and the rendering proxy client for listing platforms."""

import importlib
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from sublet_finder.scrapers.client import CircuitBreaker, ScrapingClient  # noqa: F401
    from sublet_finder.scrapers.strategies import build_strategies  # noqa: F401

__all__ = ["CircuitBreaker", "ScrapingClient", "build_strategies"]

_LAZY_IMPORTS: dict[str, tuple[str, str]] = {
    "CircuitBreaker": (".client", "CircuitBreaker"),
    "ScrapingClient": (".client", "ScrapingClient"),
    "build_strategies": (".strategies", "build_strategies"),
}


def __getattr__(name: str) -> object:
    if name in _LAZY_IMPORTS:
        module_path, attr = _LAZY_IMPORTS[name]
        mod = importlib.import_module(module_path, __name__)
        val = getattr(mod, attr)
        globals()[name] = val  # Cache so __getattr__ is only called once
        return val
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


def __dir__() -> list[str]:
    return __all__
