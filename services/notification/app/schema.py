"""
Notification Service — テーブル定義

recipients は UserCreated から作る宛先のレプリカ。
notifications.idempotency_key は "{event_id}:{template}" で一意。
"""

from sqlalchemy import Column, DateTime, Index, MetaData, String, Table, Text

from services.common.replicator import make_processed_events_table

metadata = MetaData()

processed_events = make_processed_events_table(metadata)

recipients = Table(
    "recipients",
    metadata,
    Column("user_id", String(64), primary_key=True),
    Column("email", String(255), nullable=False),
    Column("full_name", String(255), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

notifications = Table(
    "notifications",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("idempotency_key", String(128), nullable=False, unique=True),
    Column("event_id", String(36), nullable=False),
    Column("template", String(32), nullable=False),
    Column("user_id", String(64), nullable=False),
    Column("email", String(255), nullable=True),
    Column("subject", String(255), nullable=True),
    # 描画前の差し込み値 (JSON)。宛先が届いてから描画する DEFERRED 用
    Column("context", Text, nullable=False),
    Column("status", String(16), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("sent_at", DateTime(timezone=True), nullable=True),
    Index("ix_notifications_user_status", "user_id", "status"),
)
