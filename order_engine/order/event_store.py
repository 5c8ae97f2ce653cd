"""
Order — 注文履歴ストア

注文に起きたすべての遷移を order_events に追記する監査ログ。
(order_number, version) の主キーが一意なので、同じ version への
二重書き込みは制約違反になり競合として検出できる。
"""

import json

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..schema import utcnow_iso


async def append_event(
    session: AsyncSession,
    order_number: str,
    event_type: str,
    event_data: dict,
    actor: str,
    version: int,
) -> int:
    await session.execute(
        text("""
            INSERT INTO order_events
                (order_number, version, event_type, event_data, actor, created_at)
            VALUES
                (:order_number, :version, :evt_type, :evt_data, :actor, :now)
        """),
        {
            "order_number": order_number,
            "version": version,
            "evt_type": event_type,
            "evt_data": json.dumps(event_data, default=str),
            "actor": actor,
            "now": utcnow_iso(),
        },
    )
    return version


async def load_events(session: AsyncSession, order_number: str) -> list[dict]:
    """指定した注文の履歴を version 順に読み出す。"""
    result = await session.execute(
        text("""
            SELECT event_type, event_data, actor, version, created_at
            FROM order_events
            WHERE order_number = :order_number
            ORDER BY version ASC
        """),
        {"order_number": order_number},
    )
    return [
        {
            "event_type": row.event_type,
            "event_data": json.loads(row.event_data)
            if isinstance(row.event_data, str)
            else row.event_data,
            "actor": row.actor,
            "version": row.version,
            "created_at": row.created_at,
        }
        for row in result.fetchall()
    ]
