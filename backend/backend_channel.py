# backend/channel.py - Streaming data channel, connector and provider configs

import asyncio
from typing import List, Dict, Any, Optional, Callable, Protocol, runtime_checkable
import logging

from backend_database import Database
from backend_models import (
    ProviderConfig, ChannelStatus, ConnectionState, ConnectionStatus,
    StreamEvent, StreamEventKind, new_id,
)
from backend_config import settings

logger = logging.getLogger(__name__)

DATASOURCE_COMPONENT_TYPE = "datasource"

EventSink = Callable[[StreamEvent], None]

class ChannelError(Exception):
    pass


def is_snapshot_end_token(record: Dict[str, Any], key_column: str, token: Optional[str]) -> bool:
    """True when a record is the provider's end-of-snapshot marker rather than a row"""
    if not token:
        return False
    return record.get("__token") == token or record.get(key_column) == token


@runtime_checkable
class StreamingChannel(Protocol):
    async def connect(self, config: ProviderConfig) -> None: ...
    async def disconnect(self, source_id: str) -> None: ...
    async def get_snapshot(self, source_id: str) -> List[Dict[str, Any]]: ...
    async def get_status(self, source_id: str) -> ChannelStatus: ...
    def subscribe(self, source_id: str, sink: EventSink) -> None: ...
    def unsubscribe(self, source_id: str, sink: EventSink) -> None: ...


class InMemoryStreamingChannel:
    """In-process channel shared by every session of the application.

    Each provider keeps a keyed snapshot cache so a late subscriber can ask
    for the snapshot instead of waiting for the provider to replay it.
    Updates that arrive after the snapshot completed are folded into the
    cache as well.
    """

    def __init__(self, connect_delay: float = 0.0):
        self.connect_delay = connect_delay
        self._configs: Dict[str, ProviderConfig] = {}
        self._cache: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._complete: Dict[str, bool] = {}
        self._status: Dict[str, ChannelStatus] = {}
        self._subscribers: Dict[str, List[EventSink]] = {}

    async def connect(self, config: ProviderConfig) -> None:
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        self._configs[config.id] = config
        status = self._status.setdefault(config.id, ChannelStatus(sourceId=config.id))
        status.isConnected = True
        status.connectionCount += 1
        if status.mode == "idle":
            status.mode = "snapshot"
        self._cache.setdefault(config.id, {})
        self._complete.setdefault(config.id, False)
        logger.info(f"Channel connected to provider {config.id}")

    async def disconnect(self, source_id: str) -> None:
        status = self._status.get(source_id)
        if status is None or not status.isConnected:
            return
        status.isConnected = False
        status.disconnectionCount += 1
        logger.info(f"Channel disconnected from provider {source_id}")

    async def get_snapshot(self, source_id: str) -> List[Dict[str, Any]]:
        if source_id not in self._status:
            raise ChannelError(f"Unknown provider: {source_id}")
        return [dict(record) for record in self._cache.get(source_id, {}).values()]

    async def get_status(self, source_id: str) -> ChannelStatus:
        status = self._status.get(source_id)
        if status is None:
            return ChannelStatus(sourceId=source_id)
        return status.model_copy()

    def subscribe(self, source_id: str, sink: EventSink) -> None:
        sinks = self._subscribers.setdefault(source_id, [])
        if sink not in sinks:
            sinks.append(sink)

    def unsubscribe(self, source_id: str, sink: EventSink) -> None:
        sinks = self._subscribers.get(source_id, [])
        if sink in sinks:
            sinks.remove(sink)

    def publish(self, source_id: str, records: List[Dict[str, Any]]) -> StreamEventKind:
        """Deliver a batch from the provider, as snapshot or update rows"""
        config = self._configs.get(source_id)
        if config is None:
            raise ChannelError(f"Provider {source_id} is not connected")

        rows = []
        end_of_snapshot = False
        for record in records:
            if is_snapshot_end_token(record, config.keyColumn, config.snapshotEndToken):
                end_of_snapshot = True
                continue
            rows.append(record)

        cache = self._cache[source_id]
        for record in rows:
            key = record.get(config.keyColumn)
            if key is not None and key != "":
                cache[str(key)] = dict(record)

        status = self._status[source_id]
        if self._complete[source_id]:
            kind = StreamEventKind.UPDATE
            status.updateRowsReceived += len(rows)
        else:
            kind = StreamEventKind.SNAPSHOT
            status.snapshotRowsReceived += len(rows)

        if rows:
            self._emit(StreamEvent(kind=kind, sourceId=source_id, records=rows))
        if end_of_snapshot:
            self.complete_snapshot(source_id)
        return kind

    def complete_snapshot(self, source_id: str) -> None:
        if source_id not in self._status:
            raise ChannelError(f"Unknown provider: {source_id}")
        if self._complete.get(source_id):
            return
        self._complete[source_id] = True
        status = self._status[source_id]
        status.isSnapshotComplete = True
        status.mode = "realtime"
        logger.info(f"Snapshot complete for provider {source_id}: {len(self._cache[source_id])} rows cached")
        self._emit(StreamEvent(kind=StreamEventKind.SNAPSHOT_COMPLETE, sourceId=source_id))

    def _emit(self, event: StreamEvent):
        for sink in list(self._subscribers.get(event.sourceId, [])):
            try:
                sink(event.model_copy())
            except Exception as e:
                logger.error(f"Subscriber failed for provider {event.sourceId}: {e}")


class ChannelConnector:
    """Connects one surface instance to a provider with a bounded wait"""

    def __init__(self, channel: StreamingChannel, timeout: Optional[float] = None,
                 client_id: Optional[str] = None):
        self.channel = channel
        self.timeout = timeout if timeout is not None else settings.CONNECT_TIMEOUT_SECONDS
        self.state = ConnectionState(clientId=client_id or f"client-{new_id()[:12]}")

    async def connect(self, config: ProviderConfig) -> ConnectionState:
        self.state = self.state.model_copy(update={
            "status": ConnectionStatus.CONNECTING, "providerId": config.id, "error": None
        })
        try:
            await asyncio.wait_for(self.channel.connect(config), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error(f"Connect to provider {config.id} timed out after {self.timeout}s")
            self.state = self.state.model_copy(update={
                "status": ConnectionStatus.FAILED, "error": "Connection timeout"
            })
            return self.state
        except Exception as e:
            logger.error(f"Connect to provider {config.id} failed: {e}")
            self.state = self.state.model_copy(update={
                "status": ConnectionStatus.FAILED, "error": str(e)
            })
            return self.state

        self.state = self.state.model_copy(update={"status": ConnectionStatus.CONNECTED})
        return self.state

    async def disconnect(self) -> ConnectionState:
        provider_id = self.state.providerId
        if provider_id and self.state.status == ConnectionStatus.CONNECTED:
            try:
                await self.channel.disconnect(provider_id)
            except Exception as e:
                logger.error(f"Disconnect from provider {provider_id} failed: {e}")
        self.state = self.state.model_copy(update={"status": ConnectionStatus.DISCONNECTED})
        return self.state


class DatasourceStore:
    """Provider configs stored as datasource documents in the configuration store"""

    def __init__(self, db: Database):
        self.db = db

    async def get(self, provider_id: str) -> Optional[ProviderConfig]:
        record = await self.db.get(provider_id)
        if not record or record["componentType"] != DATASOURCE_COMPONENT_TYPE:
            return None
        return ProviderConfig.model_validate({**record["config"], "id": record["id"]})

    async def save(self, config: ProviderConfig) -> str:
        document = {
            "componentType": DATASOURCE_COMPONENT_TYPE,
            "name": config.name,
            "config": config.model_dump(mode="json"),
        }
        if await self.db.get(config.id):
            await self.db.update(config.id, document)
            return config.id
        return await self.db.create({**document, "id": config.id})

    async def list(self) -> List[ProviderConfig]:
        records = await self.db.query({"componentType": DATASOURCE_COMPONENT_TYPE})
        return [ProviderConfig.model_validate({**r["config"], "id": r["id"]}) for r in records]


class ProviderConfigCache:
    def __init__(self, store: DatasourceStore):
        self.store = store
        self._configs: Dict[str, ProviderConfig] = {}

    async def get(self, provider_id: str) -> Optional[ProviderConfig]:
        if provider_id in self._configs:
            return self._configs[provider_id]
        try:
            config = await self.store.get(provider_id)
        except Exception as e:
            logger.error(f"Failed to load provider config {provider_id}: {e}")
            return None
        if config is not None:
            self._configs[provider_id] = config
        return config

    def invalidate(self, provider_id: str):
        self._configs.pop(provider_id, None)

    def clear(self):
        self._configs.clear()
