from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, AsyncIterator

from dealscout.profiles import SourceProfile
from dealscout.schemas import RawRecord


class SourceAdapter(ABC):
    """Yields raw records for one external source.

    ``fetch`` is lazy, finite and not restartable. Adapters raise
    :class:`~dealscout.errors.AdapterFetchError` when the source cannot be read;
    anything else escaping ``fetch`` is treated the same way by the caller.
    """

    # Dotted canonical path -> native key, for adapters that emit flat records.
    field_map: dict[str, str] | None = None

    def __init__(self, profile: SourceProfile):
        self.profile = profile

    @property
    def source(self) -> str:
        return self.profile.key

    @abstractmethod
    def fetch(self, filters: dict[str, Any] | None = None) -> AsyncIterator[RawRecord]:
        ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}(source={self.source!r})"
