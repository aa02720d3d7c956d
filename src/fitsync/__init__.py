"""Client-side data synchronisation core for fitness records."""

from typing import TYPE_CHECKING, Any


if TYPE_CHECKING:  # pragma: no cover - import only for static analysis
    from .sync.session import SyncSession as SyncSession
else:
    def __getattr__(name: str) -> Any:
        if name == "SyncSession":
            from .sync.session import SyncSession

            return SyncSession
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = ["SyncSession"]
