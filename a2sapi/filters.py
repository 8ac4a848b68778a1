"""Which A2S request kinds a batch skips on purpose."""
from dataclasses import dataclass
from typing import Iterable, List

from a2sapi.protocol import RequestKind


class ConfigurationError(Exception):
    """Invalid batch setup; raised before any host is contacted."""


@dataclass(frozen=True)
class QueryFilter:
    ignore_info: bool = False
    ignore_players: bool = False
    ignore_rules: bool = False

    @classmethod
    def from_names(cls, names: Iterable[str]) -> "QueryFilter":
        """Build from kind names, e.g. ['players', 'rules']. Unknown names raise ConfigurationError."""
        kinds = set()
        for name in names:
            name = name.strip().lower()
            if not name:
                continue
            try:
                kinds.add(RequestKind(name))
            except ValueError:
                raise ConfigurationError(f"unknown request kind {name!r}") from None
        return cls(
            ignore_info=RequestKind.INFO in kinds,
            ignore_players=RequestKind.PLAYERS in kinds,
            ignore_rules=RequestKind.RULES in kinds,
        )

    def ignores(self, kind: RequestKind) -> bool:
        kind = RequestKind(kind)
        if kind is RequestKind.INFO:
            return self.ignore_info
        if kind is RequestKind.PLAYERS:
            return self.ignore_players
        return self.ignore_rules

    def validate(self) -> None:
        if self.ignore_info and self.ignore_players and self.ignore_rules:
            raise ConfigurationError("cannot ignore all three A2S requests")

    def kinds(self) -> List[RequestKind]:
        """Kinds to query, in order of work per host (two round trips first)."""
        order = [RequestKind.PLAYERS, RequestKind.RULES, RequestKind.INFO]
        return [k for k in order if not self.ignores(k)]
