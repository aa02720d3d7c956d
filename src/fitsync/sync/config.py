from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Mapping

from fitsync.domain.entities import EntityType
from fitsync.errors import ConfigurationError
from fitsync.sync.keys import QUERY_KINDS, QueryKey

StalenessTable = Mapping[tuple[EntityType, str], float]


def _coerce_mapping(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if hasattr(value, "to_dict"):
        value = value.to_dict()
    if isinstance(value, Mapping):
        return {str(k): v for k, v in value.items()}
    return {}


def _table_from_settings(raw: Any) -> dict[tuple[EntityType, str], float]:
    table: dict[tuple[EntityType, str], float] = {}
    for entity_name, kinds in _coerce_mapping(raw).items():
        entity_type = EntityType(entity_name.lower())
        for kind, seconds in _coerce_mapping(kinds).items():
            table[(entity_type, kind.lower())] = float(seconds)
    return table


@dataclass(slots=True, frozen=True)
class StalenessPolicy:
    """Explicit per-query staleness windows and refetch intervals, in seconds."""

    windows: StalenessTable
    refetch_intervals: StalenessTable = field(default_factory=dict)

    def staleness_for(self, key: QueryKey) -> float:
        try:
            return self.windows[(key.entity_type, key.kind)]
        except KeyError:
            raise ConfigurationError(
                f"No staleness window configured for {key.entity_type}.{key.kind}"
            ) from None

    def refetch_interval_for(self, key: QueryKey) -> float | None:
        return self.refetch_intervals.get((key.entity_type, key.kind))

    def missing(self) -> list[tuple[EntityType, str]]:
        """Return registered query kinds that have no configured window."""

        return [
            (entity_type, kind)
            for entity_type, kinds in QUERY_KINDS.items()
            for kind in kinds
            if (entity_type, kind) not in self.windows
        ]

    @classmethod
    def from_settings(cls, settings: Any) -> "StalenessPolicy":
        policy = cls(
            windows=_table_from_settings(settings.get("STALENESS")),
            refetch_intervals=_table_from_settings(settings.get("REFETCH_INTERVALS")),
        )
        missing = policy.missing()
        if missing:
            names = ", ".join(f"{entity}.{kind}" for entity, kind in missing)
            raise ConfigurationError(f"Staleness table is missing: {names}")
        return policy


@dataclass(slots=True, frozen=True)
class QueryDefaults:
    default_limit: int
    bmi_default_limit: int
    recent_limit: int
    most_used_limit: int
    completed_limit: int

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class SyncConfig:
    """Aggregate configuration for one sync session."""

    staleness: StalenessPolicy
    queries: QueryDefaults
    cache_maxsize: int
    poll_tick_seconds: float
    serialize_same_key: bool
    temp_id_prefix: str

    @classmethod
    def from_settings(cls, settings: Any) -> "SyncConfig":
        query_settings = settings.QUERIES
        queries = QueryDefaults(
            default_limit=int(query_settings.default_limit),
            bmi_default_limit=int(query_settings.bmi_default_limit),
            recent_limit=int(query_settings.recent_limit),
            most_used_limit=int(query_settings.most_used_limit),
            completed_limit=int(query_settings.completed_limit),
        )
        return cls(
            staleness=StalenessPolicy.from_settings(settings),
            queries=queries,
            cache_maxsize=max(1, int(settings.CACHE.maxsize)),
            poll_tick_seconds=float(settings.POLLER.tick_seconds),
            serialize_same_key=bool(settings.MUTATIONS.serialize_same_key),
            temp_id_prefix=str(settings.MUTATIONS.temp_id_prefix),
        )


__all__ = ["QueryDefaults", "StalenessPolicy", "SyncConfig"]
