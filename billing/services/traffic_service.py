"""
Traffic Statistics Service

Накопление трафика из отчетов серверов в отсортированных множествах Redis.

Ключи окна (start_at - unix-время начала суток UTC):
- stat_user_{start_at}:   "{rate}_{user_id}_u" / "{rate}_{user_id}_d"
- stat_server_{start_at}: "{server_type}_{server_id}_u" / "..._d"

Счетчики не транзакционны с заказами; периодический flush переносит
их в used_upload/used_download подписчиков.
"""

import enum
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from billing.utils.transaction_context import TransactionContext
from db.dal import user_dal

UsageReport = Dict[int, Tuple[int, int]]


class ServerVariant(str, enum.Enum):
    shadowsocks = "shadowsocks"
    vmess = "vmess"
    trojan = "trojan"
    hysteria = "hysteria"
    vless = "vless"
    tuic = "tuic"

    @classmethod
    def from_type(cls, server_type: str) -> "ServerVariant":
        """Resolve a node-reported type name, including legacy aliases."""
        key = (server_type or "").strip().lower()
        try:
            return SERVER_TYPE_ALIASES.get(key) or cls(key)
        except ValueError as e:
            raise ValueError(f"Unknown server type '{server_type}'") from e

    @property
    def last_push_key(self) -> str:
        return SERVER_LAST_PUSH_KEYS[self]


SERVER_TYPE_ALIASES = {
    "v2ray": ServerVariant.vmess,
    "hysteria2": ServerVariant.hysteria,
}

SERVER_LAST_PUSH_KEYS = {
    variant: f"SERVER_{variant.value.upper()}_LAST_PUSH_AT" for variant in ServerVariant
}


def day_start(now: Optional[datetime] = None) -> int:
    now = now or datetime.now(timezone.utc)
    return int(now.replace(hour=0, minute=0, second=0, microsecond=0).timestamp())


def _decode(member: Any) -> str:
    if isinstance(member, bytes):
        return member.decode()
    return str(member)


class TrafficStatService:
    """
    Redis accumulator for per-(rate, user) and per-(server type, server id)
    upload/download totals.
    """

    def __init__(self, redis: Redis, start_at: Optional[int] = None):
        self.redis = redis
        self.set_start_at(start_at if start_at is not None else day_start())

    def set_start_at(self, start_at: int) -> None:
        self.start_at = int(start_at)
        self.stat_user_key = f"stat_user_{self.start_at}"
        self.stat_server_key = f"stat_server_{self.start_at}"

    # ==================== Counters ====================

    async def stat_user(self, rate: float, user_id: int, upload: int, download: int) -> None:
        # 1 and 1.0 are the same rate
        rate = float(rate)
        await self.redis.zincrby(self.stat_user_key, upload, f"{rate}_{user_id}_u")
        await self.redis.zincrby(self.stat_user_key, download, f"{rate}_{user_id}_d")

    async def stat_server(self, server_id: int, server_type: str, upload: int, download: int) -> None:
        await self.redis.zincrby(self.stat_server_key, upload, f"{server_type}_{server_id}_u")
        await self.redis.zincrby(self.stat_server_key, download, f"{server_type}_{server_id}_d")

    async def record_usage_report(
        self,
        server_id: int,
        server_type: str,
        rate: float,
        report: UsageReport,
        parent_server_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[int, int]:
        """
        Ingest one usage report {user_id: (upload, download)} from a node.

        The counters of the day containing `now` are incremented.

        Returns the (upload, download) totals of the report.
        """
        variant = ServerVariant.from_type(server_type)
        now = now or datetime.now(timezone.utc)
        start_at = day_start(now)
        if start_at != self.start_at:
            logging.info(f"Traffic stats window moved from {self.start_at} to {start_at}")
            self.set_start_at(start_at)

        total_upload = 0
        total_download = 0

        for user_id, (upload, download) in report.items():
            upload, download = int(upload), int(download)
            if not upload and not download:
                continue
            await self.stat_user(rate, user_id, upload, download)
            total_upload += upload
            total_download += download

        await self.stat_server(server_id, variant.value, total_upload, total_download)

        push_id = parent_server_id or server_id
        await self.redis.set(f"{variant.last_push_key}_{push_id}", int(now.timestamp()))

        logging.debug(
            f"Usage report from {variant.value} server {server_id}: users={len(report)}, "
            f"u={total_upload}, d={total_download}, rate={rate}"
        )
        return total_upload, total_download

    # ==================== Reads ====================

    async def _read(self, key: str) -> List[Tuple[str, int]]:
        rows = await self.redis.zrange(key, 0, -1, withscores=True)
        return [(_decode(member), int(score)) for member, score in rows]

    async def get_stat_user(self) -> List[Dict[str, Any]]:
        stats: Dict[str, Dict[str, Any]] = {}
        for member, value in await self._read(self.stat_user_key):
            rate, user_id, direction = member.split("_")
            key = f"{rate}_{user_id}"
            if key not in stats:
                stats[key] = {
                    "record_at": self.start_at,
                    "server_rate": float(rate),
                    "u": 0,
                    "d": 0,
                    "user_id": int(user_id),
                }
            stats[key][direction] += value
        return list(stats.values())

    async def get_stat_user_by_user_id(self, user_id: int) -> List[Dict[str, Any]]:
        return [row for row in await self.get_stat_user() if row["user_id"] == int(user_id)]

    async def get_stat_server(self) -> List[Dict[str, Any]]:
        stats: Dict[str, Dict[str, Any]] = {}
        for member, value in await self._read(self.stat_server_key):
            server_type, server_id, direction = member.split("_")
            key = f"{server_type}_{server_id}"
            if key not in stats:
                stats[key] = {
                    "server_id": int(server_id),
                    "server_type": server_type,
                    "u": 0,
                    "d": 0,
                }
            stats[key][direction] += value
        return list(stats.values())

    async def clear_stat_user(self) -> None:
        await self.redis.delete(self.stat_user_key)

    async def clear_stat_server(self) -> None:
        await self.redis.delete(self.stat_server_key)

    # ==================== Persistence ====================

    async def flush_user_traffic(
        self,
        session: AsyncSession,
        rate: float,
        report: UsageReport,
    ) -> int:
        """
        Apply rated usage deltas to the subscribers' counters in one transaction.

        Returns number of updated subscribers.
        """
        rated = {
            user_id: (int(upload * rate), int(download * rate))
            for user_id, (upload, download) in report.items()
        }
        async with TransactionContext(session, name="flush_user_traffic"):
            updated = await user_dal.increment_traffic(session, rated)

        logging.info(f"Traffic flushed for {updated}/{len(report)} users (rate={rate})")
        return updated
