# -*- coding: utf-8 -*-
"""
Modelos de Persistencia
=======================

Tabela chave/valor que guarda snapshots serializados de estado de
metering e buckets de agregacao. As chaves sao strings deterministicas
(ex.: ``metering:tenant:<id>``) e permitem listagem por prefixo.
"""

from datetime import datetime
from typing import Any, Dict

from sqlalchemy import Column, String, DateTime, JSON, Index

from .connection import Base


class SnapshotRecord(Base):
    """Snapshot serializado endereçado por chave"""
    __tablename__ = "meterflow_snapshots"

    key = Column(String(512), primary_key=True)
    value = Column(JSON, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_meterflow_snapshots_updated_at", "updated_at"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "value": self.value,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<SnapshotRecord {self.key}>"
