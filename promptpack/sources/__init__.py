"""Source resolution.

Two resolvers share one small capability set:
- resolve(base_dir) -> ResolvedSource
- supports_symlink() / display_name()
- RemoteResolver additionally offers probe_remote_changed()
"""

from __future__ import annotations

from typing import Union

from ..models import LocalSource, RemoteSource, Source
from .base import RemoteInfo, ResolvedSource  # noqa: F401
from .local import LocalResolver
from .remote import RemoteResolver


Resolver = Union[LocalResolver, RemoteResolver]


def resolver_for(source: Source) -> Resolver:
    if isinstance(source, LocalSource):
        return LocalResolver(source)
    if isinstance(source, RemoteSource):
        return RemoteResolver(source)
    raise TypeError(f"unsupported source: {source!r}")
