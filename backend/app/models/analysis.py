from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
ID_TYPE = BigInteger().with_variant(Integer, "sqlite")
JSON_TYPE = JSON().with_variant(JSONB, "postgresql")


class OrganizationUnit(Base):
    __tablename__ = "organization_units"

    id = Column(ID_TYPE, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    short_name = Column(String(64))
    description = Column(Text)
    analysis_context = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class UnitAnalysisInstruction(Base):
    __tablename__ = "unit_analysis_instructions"

    id = Column(ID_TYPE, primary_key=True, autoincrement=True)
    unit_id = Column(ID_TYPE, ForeignKey("organization_units.id", ondelete="CASCADE"), nullable=False)
    instruction = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (Index("idx_unit_instructions_unit", "unit_id"),)


class AnalysisCategory(Base):
    __tablename__ = "analysis_categories"

    id = Column(ID_TYPE, primary_key=True, autoincrement=True)
    unit_id = Column(ID_TYPE, ForeignKey("organization_units.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    keywords = Column(JSON_TYPE)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (Index("idx_analysis_categories_unit", "unit_id"),)


class RawFeedbackInput(Base):
    __tablename__ = "raw_feedback_inputs"

    id = Column(ID_TYPE, primary_key=True, autoincrement=True)
    target_unit_id = Column(ID_TYPE, ForeignKey("organization_units.id", ondelete="CASCADE"), nullable=False)
    survey_id = Column(ID_TYPE)
    raw_text = Column(Text, nullable=False)
    source_column = Column(String(255))
    is_quantitative = Column(Boolean, nullable=False, default=False, server_default=text("false"))
    requires_analysis = Column(Boolean, nullable=False, default=True, server_default=text("true"))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("idx_raw_inputs_unit_survey_id", "target_unit_id", "survey_id", "id"),
    )


class FeedbackSegment(Base):
    __tablename__ = "feedback_segments"

    id = Column(ID_TYPE, primary_key=True, autoincrement=True)
    raw_input_id = Column(ID_TYPE, ForeignKey("raw_feedback_inputs.id", ondelete="CASCADE"), nullable=False)
    segment_text = Column(Text, nullable=False)
    sentiment = Column(String(16), nullable=False)
    category_id = Column(ID_TYPE, ForeignKey("analysis_categories.id", ondelete="SET NULL"))
    related_unit_ids = Column(JSON_TYPE, nullable=False, default=list)
    is_suggestion = Column(Boolean, nullable=False, default=False, server_default=text("false"))
    is_placeholder = Column(Boolean, nullable=False, default=False, server_default=text("false"))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint(
            "sentiment IN ('Positive', 'Neutral', 'Negative')",
            name="chk_feedback_segments_sentiment",
        ),
        Index("idx_feedback_segments_raw_input", "raw_input_id"),
    )


class AnalysisJob(Base):
    __tablename__ = "analysis_jobs"

    id = Column(ID_TYPE, primary_key=True, autoincrement=True)
    unit_id = Column(ID_TYPE, ForeignKey("organization_units.id", ondelete="CASCADE"), nullable=False)
    survey_id = Column(ID_TYPE)
    status = Column(String(16), nullable=False, default="PENDING", server_default=text("'PENDING'"))
    total_items = Column(Integer, nullable=False, default=0, server_default=text("0"))
    processed_items = Column(Integer, nullable=False, default=0, server_default=text("0"))
    failed_batches = Column(Integer, nullable=False, default=0, server_default=text("0"))
    last_scanned_id = Column(ID_TYPE)
    logs = Column(JSON_TYPE, nullable=False, default=list)
    error = Column(Text)
    started_at = Column(DateTime(timezone=True))
    finished_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING', 'PROCESSING', 'STOPPED', 'COMPLETED', 'FAILED')",
            name="chk_analysis_jobs_status",
        ),
        Index("idx_analysis_jobs_scope_status", "unit_id", "survey_id", "status"),
    )


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(ID_TYPE, primary_key=True, autoincrement=True)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(64), nullable=False)
    action = Column(String(64), nullable=False)
    new_value = Column(JSON_TYPE)
    actor_type = Column(String(50), nullable=False)
    audit_meta = Column("metadata", JSON_TYPE, nullable=True)
    timestamp = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("idx_audit_logs_entity", "entity_type", "entity_id"),
        Index("idx_audit_logs_action_ts", "action", "timestamp"),
    )
