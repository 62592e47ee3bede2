"""SQLAlchemy ORM models."""
import uuid

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from app.core.clock import utcnow
from app.infrastructure.database.base import Base


def generate_uuid() -> str:
    return str(uuid.uuid4())


class Device(Base):
    __tablename__ = "devices"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(String(100))
    model = Column(String(100))
    android_version = Column(String(20))
    is_online = Column(Boolean, nullable=False, default=False)
    valid = Column(Boolean, nullable=False, default=True)
    last_online_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, onupdate=utcnow)


class DeviceGroup(Base):
    __tablename__ = "device_groups"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(String(100), nullable=False, unique=True)
    description = Column(Text)
    sort_order = Column(Integer, nullable=False, default=0)
    valid = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, onupdate=utcnow)

    members = relationship(
        "DeviceGroupMember",
        back_populates="group",
        cascade="all, delete-orphan",
        order_by="DeviceGroupMember.position",
    )


class DeviceGroupMember(Base):
    __tablename__ = "device_group_members"

    group_id = Column(String(36), ForeignKey("device_groups.id"), primary_key=True)
    device_id = Column(String(36), ForeignKey("devices.id"), primary_key=True)
    position = Column(Integer, nullable=False, default=0)

    group = relationship("DeviceGroup", back_populates="members")


class Script(Base):
    __tablename__ = "scripts"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    code = Column(String(100), nullable=False, unique=True, index=True)
    name = Column(String(150), nullable=False)
    version = Column(String(50), nullable=False, default="1.0.0")
    content = Column(Text)
    checksum = Column(String(64))
    parameters = Column(Text)
    priority = Column(Integer, nullable=False, default=0)
    timeout = Column(Integer, nullable=False, default=3600)
    max_retries = Column(Integer, nullable=False, default=3)
    valid = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, onupdate=utcnow)


class Task(Base):
    __tablename__ = "tasks"
    __table_args__ = (
        Index("ix_tasks_status_priority", "status", "priority", "created_at"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(String(150), nullable=False)
    description = Column(Text)
    script_id = Column(String(36), ForeignKey("scripts.id"), nullable=False, index=True)
    task_type = Column(String(20), nullable=False, default="immediate")
    status = Column(String(20), nullable=False, default="pending")
    target_type = Column(String(20), nullable=False, default="all")
    target_group_id = Column(String(36))
    target_device_ids = Column(Text)
    parameters = Column(Text)
    scheduled_time = Column(DateTime)
    cron_expression = Column(String(100))
    priority = Column(Integer, nullable=False, default=0)
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    run_number = Column(Integer, nullable=False, default=0)
    total_devices = Column(Integer, nullable=False, default=0)
    success_devices = Column(Integer, nullable=False, default=0)
    failed_devices = Column(Integer, nullable=False, default=0)
    start_time = Column(DateTime)
    end_time = Column(DateTime)
    last_execution_time = Column(DateTime)
    last_run_status = Column(String(20))
    failure_reason = Column(Text)
    cancel_requested = Column(Boolean, nullable=False, default=False)
    valid = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, onupdate=utcnow)


class ScriptExecutionRecord(Base):
    __tablename__ = "script_execution_records"
    __table_args__ = (
        Index("ix_records_task_run_device", "task_id", "run_number", "device_id"),
        Index("ix_records_status_available", "status", "available_at"),
        UniqueConstraint("instruction_id", name="uq_records_instruction_id"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    task_id = Column(String(36), ForeignKey("tasks.id"), nullable=True, index=True)
    script_id = Column(String(36), ForeignKey("scripts.id"), nullable=False)
    device_id = Column(String(36), nullable=False, index=True)
    run_number = Column(Integer, nullable=False, default=1)
    status = Column(String(20), nullable=False, default="pending")
    retry_count = Column(Integer, nullable=False, default=0)
    instruction_id = Column(String(40), nullable=False)
    parameters = Column(Text)
    available_at = Column(DateTime, nullable=False, default=utcnow)
    start_time = Column(DateTime)
    end_time = Column(DateTime)
    duration = Column(Float)
    output = Column(Text)
    error_message = Column(Text)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, onupdate=utcnow)
