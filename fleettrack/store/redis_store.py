"""
FleetTrack Redis Store

Production ``TrackingStore`` over redis.asyncio.

Layout (all keys under the configured prefix):
    trip:{id}                   JSON document
    trips                       ZSET of trip ids scored by creation time
    trip:{id}:shipments         SET of shipment ids
    shipment:{id}               JSON document
    consent:{id}                JSON document
    driver:{id}:consents        SET of consent ids
    trip:{id}:samples           LIST of sample documents; position i holds
                                sequence number i + 1
    trip:{id}:tracking_log      HASH summary
    trip:{id}:alerts            SET of alert ids
    alert:{id}                  JSON document
    credential:{type}           JSON document
    lease:{name}                owner token, SET NX PX
    settings                    HASH key -> string value
    trip:{id}:audit             LIST of audit documents
    shipment:{id}:history       LIST of status history documents

Sequence numbers come from the list length returned by RPUSH inside a
Lua script that also upserts the tracking log, so concurrent appenders
on any number of processes get gap-free, strictly increasing numbers.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional
import logging

import redis.asyncio as redis
from redis.exceptions import RedisError, ConnectionError as RedisConnectionError

from ..exceptions import StoreError
from ..models import (
    Alert,
    AlertStatus,
    AlertType,
    ConsentStatus,
    Credential,
    DriverConsent,
    LocationFix,
    LocationSample,
    Shipment,
    ShipmentStatus,
    ShipmentStatusHistory,
    TokenType,
    TrackingLog,
    Trip,
    TripAuditLog,
    TripStatus,
    utcnow,
)
from .base import TrackingStore


logger = logging.getLogger(__name__)


APPEND_SAMPLE_SCRIPT = """
local seq = redis.call('RPUSH', KEYS[1], ARGV[1])
local last = tonumber(redis.call('HGET', KEYS[2], 'last_sequence_number') or '0')
if seq > last then
    redis.call('HSET', KEYS[2],
        'trip_id', ARGV[2],
        'source', ARGV[3],
        'last_sequence_number', seq,
        'last_updated_at', ARGV[4])
end
return seq
"""

RELEASE_LEASE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


class RedisConnectionManager:
    """
    Manages Redis connections with automatic reconnection and pooling.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        max_connections: int = 100,
        socket_timeout: float = 5.0,
        socket_connect_timeout: float = 5.0,
        retry_attempts: int = 3,
        retry_delay: float = 0.1,
    ):
        self._redis_url = redis_url
        self._max_connections = max_connections
        self._socket_timeout = socket_timeout
        self._socket_connect_timeout = socket_connect_timeout
        self._retry_attempts = retry_attempts
        self._retry_delay = retry_delay
        self._pool: Optional[redis.ConnectionPool] = None
        self._client: Optional[redis.Redis] = None
        self._lock = asyncio.Lock()

    async def get_client(self) -> redis.Redis:
        """
        Get a Redis client, creating the connection pool if needed.

        Raises:
            RedisConnectionError: If unable to connect after retries
        """
        if self._client is not None:
            return self._client

        async with self._lock:
            # Double-check after acquiring lock
            if self._client is not None:
                return self._client

            for attempt in range(self._retry_attempts):
                try:
                    self._pool = redis.ConnectionPool.from_url(
                        self._redis_url,
                        max_connections=self._max_connections,
                        socket_timeout=self._socket_timeout,
                        socket_connect_timeout=self._socket_connect_timeout,
                        decode_responses=True,
                    )
                    client = redis.Redis(connection_pool=self._pool)
                    await client.ping()
                    self._client = client
                    logger.info("Redis connection established successfully")
                    return self._client

                except RedisError as e:
                    logger.warning(f"Redis connection attempt {attempt + 1} failed: {e}")
                    if attempt < self._retry_attempts - 1:
                        await asyncio.sleep(self._retry_delay * (attempt + 1))
                    else:
                        raise RedisConnectionError(
                            f"Failed to connect to Redis after {self._retry_attempts} attempts"
                        ) from e

        raise RedisConnectionError("Unexpected state in connection manager")

    async def close(self) -> None:
        """Close Redis connections gracefully."""
        if self._client:
            await self._client.aclose()
            self._client = None
        if self._pool:
            await self._pool.disconnect()
            self._pool = None


class RedisTrackingStore(TrackingStore):
    """
    Redis-backed TrackingStore.

    Example:
        store = RedisTrackingStore.from_config(get_config().redis)
        trip = await store.get_trip(trip_id)

    Args:
        redis_url: Connection URL (ignored when ``client`` is given)
        key_prefix: Namespace for every key
        client: Pre-built client, e.g. a test double
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        key_prefix: str = "fleettrack:",
        client: Optional[Any] = None,
        max_connections: int = 100,
        socket_timeout: float = 5.0,
        socket_connect_timeout: float = 5.0,
    ):
        self._prefix = key_prefix
        self._manager = RedisConnectionManager(
            redis_url,
            max_connections=max_connections,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_connect_timeout,
        )
        self._client = client
        self._append_script = None
        self._release_script = None

    @classmethod
    def from_config(cls, config) -> "RedisTrackingStore":
        """Build from a ``RedisConfig``."""
        return cls(
            redis_url=config.url,
            key_prefix=config.key_prefix,
            max_connections=config.max_connections,
            socket_timeout=config.socket_timeout,
            socket_connect_timeout=config.socket_connect_timeout,
        )

    async def _redis(self):
        if self._client is None:
            self._client = await self._manager.get_client()
        if self._append_script is None:
            self._append_script = self._client.register_script(APPEND_SAMPLE_SCRIPT)
            self._release_script = self._client.register_script(RELEASE_LEASE_SCRIPT)
        return self._client

    def _key(self, *parts: str) -> str:
        return self._prefix + ":".join(parts)

    @contextmanager
    def _errors(self, operation: str) -> Iterator[None]:
        try:
            yield
        except RedisError as e:
            logger.error(f"Redis {operation} failed: {e}")
            raise StoreError(f"{operation} failed: {e}") from e

    async def close(self) -> None:
        await self._manager.close()
        self._client = None
        self._append_script = None
        self._release_script = None

    # -------------------------------------------------------------------------
    # Document helpers
    # -------------------------------------------------------------------------

    async def _get_doc(self, model, key: str):
        client = await self._redis()
        raw = await client.get(key)
        return model.model_validate_json(raw) if raw else None

    async def _get_docs(self, model, keys: List[str]) -> list:
        if not keys:
            return []
        client = await self._redis()
        raws = await client.mget(keys)
        return [model.model_validate_json(raw) for raw in raws if raw]

    # -------------------------------------------------------------------------
    # Trips
    # -------------------------------------------------------------------------

    async def get_trip(self, trip_id: str) -> Optional[Trip]:
        with self._errors("get_trip"):
            return await self._get_doc(Trip, self._key("trip", trip_id))

    async def save_trip(self, trip: Trip) -> None:
        trip.updated_at = utcnow()
        with self._errors("save_trip"):
            client = await self._redis()
            async with client.pipeline(transaction=True) as pipe:
                pipe.set(self._key("trip", trip.id), trip.model_dump_json())
                pipe.zadd(self._key("trips"), {trip.id: trip.created_at.timestamp()})
                await pipe.execute()

    async def list_trips(self, statuses: Optional[Iterable[TripStatus]] = None) -> List[Trip]:
        wanted = set(statuses) if statuses is not None else None
        with self._errors("list_trips"):
            client = await self._redis()
            ids = await client.zrange(self._key("trips"), 0, -1)
            trips = await self._get_docs(Trip, [self._key("trip", i) for i in ids])
        return [t for t in trips if wanted is None or t.status in wanted]

    # -------------------------------------------------------------------------
    # Shipments
    # -------------------------------------------------------------------------

    async def list_shipments(
        self,
        trip_id: str,
        statuses: Optional[Iterable[ShipmentStatus]] = None,
    ) -> List[Shipment]:
        wanted = set(statuses) if statuses is not None else None
        with self._errors("list_shipments"):
            client = await self._redis()
            ids = sorted(await client.smembers(self._key("trip", trip_id, "shipments")))
            shipments = await self._get_docs(Shipment, [self._key("shipment", i) for i in ids])
        return [s for s in shipments if wanted is None or s.status in wanted]

    async def save_shipment(self, shipment: Shipment) -> None:
        shipment.updated_at = utcnow()
        with self._errors("save_shipment"):
            client = await self._redis()
            async with client.pipeline(transaction=True) as pipe:
                pipe.set(self._key("shipment", shipment.id), shipment.model_dump_json())
                if shipment.trip_id:
                    pipe.sadd(self._key("trip", shipment.trip_id, "shipments"), shipment.id)
                await pipe.execute()

    # -------------------------------------------------------------------------
    # Consents
    # -------------------------------------------------------------------------

    async def save_consent(self, consent: DriverConsent) -> None:
        """Consents are owned by the consent service; exposed for seeding."""
        with self._errors("save_consent"):
            client = await self._redis()
            async with client.pipeline(transaction=True) as pipe:
                pipe.set(self._key("consent", consent.id), consent.model_dump_json())
                pipe.sadd(self._key("driver", consent.driver_id, "consents"), consent.id)
                await pipe.execute()

    async def get_consent(self, consent_id: str) -> Optional[DriverConsent]:
        with self._errors("get_consent"):
            return await self._get_doc(DriverConsent, self._key("consent", consent_id))

    async def latest_allowed_consent(self, driver_id: str) -> Optional[DriverConsent]:
        with self._errors("latest_allowed_consent"):
            client = await self._redis()
            ids = await client.smembers(self._key("driver", driver_id, "consents"))
            consents = await self._get_docs(
                DriverConsent, [self._key("consent", i) for i in sorted(ids)],
            )
        allowed = [c for c in consents if c.consent_status == ConsentStatus.ALLOWED]
        return max(allowed, key=lambda c: c.created_at) if allowed else None

    # -------------------------------------------------------------------------
    # Location samples
    # -------------------------------------------------------------------------

    @staticmethod
    def _sample_from_raw(trip_id: str, sequence_number: int, raw: str) -> LocationSample:
        doc = json.loads(raw)
        return LocationSample(trip_id=trip_id, sequence_number=sequence_number, **doc)

    async def append_sample(self, trip_id: str, fix: LocationFix) -> LocationSample:
        sample_id = str(uuid.uuid4())
        doc = fix.model_dump(mode="json")
        doc["id"] = sample_id
        with self._errors("append_sample"):
            await self._redis()
            seq = await self._append_script(
                keys=[
                    self._key("trip", trip_id, "samples"),
                    self._key("trip", trip_id, "tracking_log"),
                ],
                args=[json.dumps(doc), trip_id, fix.source.value, utcnow().isoformat()],
            )
        sample = LocationSample.from_fix(trip_id, int(seq), fix)
        return sample.model_copy(update={"id": sample_id})

    async def list_samples(self, trip_id: str, limit: Optional[int] = None) -> List[LocationSample]:
        key = self._key("trip", trip_id, "samples")
        with self._errors("list_samples"):
            client = await self._redis()
            if limit is None:
                raws = await client.lrange(key, 0, -1)
                first_seq = 1
            elif limit <= 0:
                return []
            else:
                async with client.pipeline(transaction=True) as pipe:
                    pipe.llen(key)
                    pipe.lrange(key, -limit, -1)
                    length, raws = await pipe.execute()
                first_seq = max(1, int(length) - len(raws) + 1)
        return [self._sample_from_raw(trip_id, first_seq + i, raw) for i, raw in enumerate(raws)]

    async def latest_sample(self, trip_id: str) -> Optional[LocationSample]:
        samples = await self.list_samples(trip_id, limit=1)
        return samples[0] if samples else None

    async def get_tracking_log(self, trip_id: str) -> Optional[TrackingLog]:
        with self._errors("get_tracking_log"):
            client = await self._redis()
            data = await client.hgetall(self._key("trip", trip_id, "tracking_log"))
        if not data:
            return None
        return TrackingLog(
            trip_id=data["trip_id"],
            source=data["source"],
            last_sequence_number=int(data["last_sequence_number"]),
            last_updated_at=data["last_updated_at"],
        )

    # -------------------------------------------------------------------------
    # Alerts
    # -------------------------------------------------------------------------

    async def get_alert(self, alert_id: str) -> Optional[Alert]:
        with self._errors("get_alert"):
            return await self._get_doc(Alert, self._key("alert", alert_id))

    async def save_alert(self, alert: Alert) -> None:
        with self._errors("save_alert"):
            client = await self._redis()
            async with client.pipeline(transaction=True) as pipe:
                pipe.set(self._key("alert", alert.id), alert.model_dump_json())
                pipe.sadd(self._key("trip", alert.trip_id, "alerts"), alert.id)
                await pipe.execute()

    async def list_alerts(
        self,
        trip_id: str,
        alert_type: Optional[AlertType] = None,
        statuses: Optional[Iterable[AlertStatus]] = None,
    ) -> List[Alert]:
        wanted = set(statuses) if statuses is not None else None
        with self._errors("list_alerts"):
            client = await self._redis()
            ids = await client.smembers(self._key("trip", trip_id, "alerts"))
            alerts = await self._get_docs(Alert, [self._key("alert", i) for i in sorted(ids)])
        alerts = [
            a for a in alerts
            if (alert_type is None or a.alert_type == alert_type)
            and (wanted is None or a.status in wanted)
        ]
        return sorted(alerts, key=lambda a: a.triggered_at)

    # -------------------------------------------------------------------------
    # Credentials
    # -------------------------------------------------------------------------

    async def get_credential(self, token_type: TokenType) -> Optional[Credential]:
        with self._errors("get_credential"):
            return await self._get_doc(Credential, self._key("credential", token_type.value))

    async def save_credential(self, credential: Credential) -> None:
        with self._errors("save_credential"):
            client = await self._redis()
            await client.set(
                self._key("credential", credential.token_type.value),
                credential.model_dump_json(),
            )

    async def list_credentials(self) -> List[Credential]:
        keys = [self._key("credential", t.value) for t in TokenType]
        with self._errors("list_credentials"):
            return await self._get_docs(Credential, keys)

    async def acquire_lease(self, name: str, ttl_seconds: float) -> Optional[str]:
        token = uuid.uuid4().hex
        with self._errors("acquire_lease"):
            client = await self._redis()
            acquired = await client.set(
                self._key("lease", name), token, nx=True, px=max(1, int(ttl_seconds * 1000)),
            )
        return token if acquired else None

    async def release_lease(self, name: str, token: str) -> None:
        with self._errors("release_lease"):
            await self._redis()
            await self._release_script(keys=[self._key("lease", name)], args=[token])

    # -------------------------------------------------------------------------
    # Settings
    # -------------------------------------------------------------------------

    async def get_settings(self) -> Dict[str, str]:
        with self._errors("get_settings"):
            client = await self._redis()
            return dict(await client.hgetall(self._key("settings")))

    async def set_setting(self, key: str, value: str) -> None:
        with self._errors("set_setting"):
            client = await self._redis()
            await client.hset(self._key("settings"), key, value)

    # -------------------------------------------------------------------------
    # Audit trail
    # -------------------------------------------------------------------------

    async def add_trip_audit(self, entry: TripAuditLog) -> None:
        with self._errors("add_trip_audit"):
            client = await self._redis()
            await client.rpush(self._key("trip", entry.trip_id, "audit"), entry.model_dump_json())

    async def list_trip_audit(self, trip_id: str) -> List[TripAuditLog]:
        with self._errors("list_trip_audit"):
            client = await self._redis()
            raws = await client.lrange(self._key("trip", trip_id, "audit"), 0, -1)
        return [TripAuditLog.model_validate_json(raw) for raw in raws]

    async def add_shipment_history(self, entry: ShipmentStatusHistory) -> None:
        with self._errors("add_shipment_history"):
            client = await self._redis()
            await client.rpush(
                self._key("shipment", entry.shipment_id, "history"), entry.model_dump_json(),
            )

    async def list_shipment_history(self, shipment_id: str) -> List[ShipmentStatusHistory]:
        with self._errors("list_shipment_history"):
            client = await self._redis()
            raws = await client.lrange(self._key("shipment", shipment_id, "history"), 0, -1)
        return [ShipmentStatusHistory.model_validate_json(raw) for raw in raws]
