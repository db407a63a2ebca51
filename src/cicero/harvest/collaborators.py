"""Capabilities the fetch run consumes but does not implement.

Deployments provide concrete adapters (scrapers, the chat transport, the
client registry) and wire them into the container.
"""

from datetime import datetime
from typing import Any, Mapping, Optional, Protocol, runtime_checkable

from cicero.harvest.clients import ClientRef, ContentDeltas, LinkChange
from cicero.scheduler.scheduler_models import PlatformCounts


@runtime_checkable
class ClientRegistry(Protocol):
    async def load_active_clients(self) -> list[ClientRef]: ...


@runtime_checkable
class PlatformFetcher(Protocol):
    async def fetch_instagram_posts(self, client: ClientRef) -> None: ...

    async def refresh_instagram_likes(self, client: ClientRef) -> None: ...

    async def fetch_tiktok_posts(self, client: ClientRef) -> None: ...

    async def refresh_tiktok_comments(self, client: ClientRef) -> None: ...


@runtime_checkable
class PlatformCountSource(Protocol):
    async def fetch_platform_counts(self, client_id: str) -> PlatformCounts: ...


@runtime_checkable
class ContentDeltaSource(Protocol):
    async def fetch_platform_content_deltas(
        self,
        client_id: str,
        *,
        previous: PlatformCounts,
        current: PlatformCounts,
    ) -> ContentDeltas: ...

    async def fetch_link_changes(self, client_id: str, *, since: datetime) -> list[LinkChange]:
        """Link reports filed against the client's posts after ``since``."""
        ...


@runtime_checkable
class MessageTransport(Protocol):
    async def send_message(self, destination: str, text: str) -> bool: ...


@runtime_checkable
class AlertSink(Protocol):
    """Operator alerting. Implementations never raise."""

    async def alert_on_error(
        self,
        context: str,
        error: BaseException,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> None: ...
