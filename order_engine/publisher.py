"""
Order Engine — イベント発行

Redis Pub/Sub は fire-and-forget 方式。
通知の配送・再送は通知サービスの責務なので、
発行に失敗してもコマンドの結果は変えずにログだけ残す。
"""

import json
import logging

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from . import config
from .events import DomainEvent

logger = logging.getLogger(__name__)


def encode_event(event: DomainEvent) -> str:
    return json.dumps(
        {
            "event_type": event.event_type,
            "data": event.model_dump(mode="json", by_alias=True),
        },
        default=str,
    )


async def publish(
    redis: aioredis.Redis | None,
    event: DomainEvent,
    channel: str = config.ORDER_EVENTS_CHANNEL,
) -> None:
    """コミット済みのイベントを発行する。ロック保持中に呼んではならない。"""
    if redis is None:
        logger.warning(
            "No event channel configured, dropping %s for %s",
            event.event_type,
            event.order_number,
        )
        return
    try:
        await redis.publish(channel, encode_event(event))
    except RedisError:
        logger.warning(
            "Failed to publish %s for order %s",
            event.event_type,
            event.order_number,
            exc_info=True,
        )
    else:
        logger.debug("Published %s for order %s", event.event_type, event.order_number)


async def publish_all(redis: aioredis.Redis | None, events: list[DomainEvent]) -> None:
    for event in events:
        await publish(redis, event)
