"""
Storefront — イベントストア

在庫 (Sweet) と注文 (Order) のすべての状態変更をイベントとして追記する。
追記のみで、更新・削除は行わない。

(aggregate_id, version) の UNIQUE 制約で楽観的ロックを実現する:
同じバージョンへの二重書き込みは制約違反で失敗する。

append_event は呼び出し側のトランザクション内で実行され、
コミットは呼び出し側が行う。状態変更とイベントは同時に見えるようになる。
"""

import json
from datetime import datetime, timezone

from sqlalchemy import DateTime, text
from sqlalchemy.ext.asyncio import AsyncSession

from .db import as_utc


async def append_event(
    session: AsyncSession,
    aggregate_id: str,
    aggregate_type: str,
    event_type: str,
    event_data: dict,
    version: int,
) -> int:
    await session.execute(
        text("""
            INSERT INTO event_store
                (aggregate_id, aggregate_type, event_type, event_data, version, created_at)
            VALUES
                (:agg_id, :agg_type, :evt_type, :evt_data, :version, :now)
        """),
        {
            "agg_id": aggregate_id,
            "agg_type": aggregate_type,
            "evt_type": event_type,
            "evt_data": json.dumps(event_data, default=str),
            "version": version,
            "now": datetime.now(timezone.utc),
        },
    )
    return version


def _to_dict(row, with_aggregate: bool) -> dict:
    event = {
        "event_type": row.event_type,
        "event_data": json.loads(row.event_data)
        if isinstance(row.event_data, str)
        else row.event_data,
        "version": row.version,
        "created_at": as_utc(row.created_at).isoformat() if row.created_at else None,
    }
    if with_aggregate:
        event = {
            "aggregate_id": row.aggregate_id,
            "aggregate_type": row.aggregate_type,
            **event,
        }
    return event


async def load_events(session: AsyncSession, aggregate_id: str) -> list[dict]:
    """指定した集約の全イベントをバージョン順に読み出す。"""
    result = await session.execute(
        text("""
            SELECT event_type, event_data, version, created_at
            FROM event_store
            WHERE aggregate_id = :agg_id
            ORDER BY version ASC
        """).columns(created_at=DateTime(timezone=True)),
        {"agg_id": aggregate_id},
    )
    return [_to_dict(row, with_aggregate=False) for row in result.fetchall()]


async def load_all_events(session: AsyncSession) -> list[dict]:
    """すべてのイベントを時系列順に返す（デバッグ用）。"""
    result = await session.execute(
        text("""
            SELECT aggregate_id, aggregate_type, event_type, event_data, version, created_at
            FROM event_store
            ORDER BY created_at ASC, id ASC
        """).columns(created_at=DateTime(timezone=True)),
    )
    return [_to_dict(row, with_aggregate=True) for row in result.fetchall()]
