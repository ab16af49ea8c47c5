"""
SQLAlchemy models for the history migration ledger and target store.

The ledger (`id_key_mappings`) records, per source entity, the key it was
given in the target or the reason it was skipped. Built target records are
stored in `target_records`, one row per record, with the ancestor keys that
lookups filter on promoted to indexed columns.
"""

from datetime import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class IdKeyMapping(Base):
    """
    Maps a source entity to its target key.

    A row with a null target_key is a skipped entity; skip_reason says why.
    """

    __tablename__ = "id_key_mappings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    source_id: Mapped[str] = mapped_column(
        String(255), nullable=False, comment="Identifier in the source system"
    )
    entity_type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        index=True,
        comment="History entity type (e.g., PROCESS_INSTANCE, VARIABLE)",
    )
    target_key: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        comment="Key in the target system (null if skipped)",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, comment="Natural creation time of the source entity (UTC)"
    )
    skip_reason: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Why the entity was skipped"
    )
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now(), comment="When the row was written"
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
        comment="When the row was last updated",
    )

    __table_args__ = (
        UniqueConstraint("source_id", "entity_type", name="uq_id_key_source_entity_type"),
        Index("idx_id_key_type_created", "entity_type", "created_at"),
        Index("idx_id_key_type_target", "entity_type", "target_key"),
    )

    def __repr__(self) -> str:
        return (
            f"<IdKeyMapping(entity_type='{self.entity_type}', source_id='{self.source_id}', "
            f"target_key={self.target_key!r}, skip_reason={self.skip_reason!r})>"
        )


class TargetRecordRow(Base):
    """
    A record written to the target store.

    The full record is kept in `payload`; ancestor keys are duplicated into
    indexed columns so child migrators can search by them.
    """

    __tablename__ = "target_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    record_key: Mapped[str] = mapped_column(
        String(64), nullable=False, comment="Primary key of the record in the target"
    )
    key_sequence: Mapped[int | None] = mapped_column(
        BigInteger, nullable=True, comment="Generator sequence the key was encoded from"
    )

    process_instance_key: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    process_definition_key: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    root_process_instance_key: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    element_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, comment="BPMN element id (flow node id)"
    )

    payload: Mapped[dict] = mapped_column(JSON, nullable=False, comment="Serialized record")
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("entity_type", "record_key", name="uq_target_type_key"),
        Index("idx_target_type_pi", "entity_type", "process_instance_key"),
        Index("idx_target_type_pi_element", "entity_type", "process_instance_key", "element_id"),
        Index("idx_target_type_pd", "entity_type", "process_definition_key"),
    )

    def __repr__(self) -> str:
        return f"<TargetRecordRow(entity_type='{self.entity_type}', record_key='{self.record_key}')>"
