"""Shared fixtures: temporary SQLite shards, a campaign DB and a scripted provider."""

import os
import shutil
import tempfile
from typing import Any, Dict, List, Optional

from sqlalchemy import create_engine, text

from wacast.config import ShardConfig
from wacast.db import get_sessionmaker
from wacast.errors import NetworkError
from wacast.providers.base import BaseMessageProvider, SendResult
from wacast.schema import create_all

COLUMNS = {
    "status": "estado",
    "channel": "medio",
    "paid_at": "pagado_at",
    "upsell_paid_at": "upsell_pagado_at",
    "revenue": "ingreso",
    "sent": "enviado",
    "template_sent_at": "plantilla_at",
    "template_name": "plantilla_enviada",
    "responded": "respondio_masivo",
}

SHARD_DDL = """
CREATE TABLE users (
    whatsapp TEXT PRIMARY KEY,
    estado TEXT,
    medio TEXT,
    pagado_at INTEGER,
    upsell_pagado_at INTEGER,
    ingreso REAL,
    enviado BOOLEAN DEFAULT 0,
    plantilla_at INTEGER,
    plantilla_enviada TEXT,
    respondio_masivo BOOLEAN DEFAULT 0
)
"""


def make_shard(directory: str, key: str, rows: List[Dict[str, Any]], timestamp_unit: str = "seconds") -> ShardConfig:
    path = os.path.join(directory, f"{key}.db")
    url = f"sqlite:///{path}"
    eng = create_engine(url, future=True)
    with eng.begin() as conn:
        conn.execute(text(SHARD_DDL))
        for r in rows:
            cols = ", ".join(r)
            params = ", ".join(f":{c}" for c in r)
            conn.execute(text(f"INSERT INTO users ({cols}) VALUES ({params})"), r)
    eng.dispose()
    return ShardConfig(
        key=key,
        url=url,
        table="users",
        name=key,
        id_column="whatsapp",
        timestamp_unit=timestamp_unit,
        columns=dict(COLUMNS),
    )


def read_shard_row(cfg: ShardConfig, recipient_id: str) -> Optional[Dict[str, Any]]:
    eng = create_engine(cfg.url, future=True)
    try:
        with eng.connect() as conn:
            row = conn.execute(text("SELECT * FROM users WHERE whatsapp = :w"), {"w": recipient_id}).mappings().first()
            return dict(row) if row else None
    finally:
        eng.dispose()


def update_shard_row(cfg: ShardConfig, recipient_id: str, **values: Any) -> None:
    eng = create_engine(cfg.url, future=True)
    sets = ", ".join(f"{k} = :{k}" for k in values)
    try:
        with eng.begin() as conn:
            conn.execute(text(f"UPDATE users SET {sets} WHERE whatsapp = :w"), {"w": recipient_id, **values})
    finally:
        eng.dispose()


def make_campaign_db(directory: str):
    """Returns (engine, sessionmaker) for a fresh campaign database."""
    eng = create_engine(f"sqlite:///{os.path.join(directory, 'campaigns.db')}", future=True)
    create_all(eng)
    return eng, get_sessionmaker(eng)


class ScriptedProvider(BaseMessageProvider):
    """
    Fake provider. `script` maps recipient -> SendResult, or -> an exception
    instance to raise. Unlisted recipients succeed.
    """

    name = "scripted"

    def __init__(self, script: Optional[Dict[str, Any]] = None, on_send=None):
        self.script = dict(script or {})
        self.calls: List[Dict[str, Any]] = []
        self.on_send = on_send

    def send(self, *, to, template_name, language, components=None, live=True):
        self.calls.append({"to": to, "template_name": template_name, "language": language, "live": live})
        if self.on_send is not None:
            self.on_send(to)
        outcome = self.script.get(to)
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, SendResult):
            return outcome
        return SendResult(ok=True, provider_name=self.name, provider_message_id=f"wamid.{to}")


def network_failure(message: str = "Connection reset by peer") -> SendResult:
    return SendResult(ok=False, provider_name="scripted", error=message, error_kind=NetworkError.kind)


class TempDirMixin:
    def make_tempdir(self) -> str:
        d = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, d, ignore_errors=True)
        return d
