"""SQLAlchemy 2.0 ORM models.

This module contains all SQLAlchemy models for the automation orchestrator.
All models use the Mapped[type] annotation pattern required by SQLAlchemy 2.0.

Ownership:
    Product, SubProduct, Channel and AutomationConfig are owned by the
    catalogue/configuration screens and are read-only to the orchestrator.
    AutomationRun, AutomationRunStep and AutomationRunLog are written by the
    orchestrator only.

Async Note:
    Relationships are declared for query construction (joins, selectinload).
    Never rely on implicit lazy loading inside async code; load what you need
    explicitly.
"""

import enum
import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, validates

from automation.exceptions import InvalidStateTransitionError


def utcnow() -> datetime:
    """Get current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


class RunStatus(enum.Enum):
    """Lifecycle of one pipeline execution for a channel.

    Flow:
        starting → running → completed | failed
        starting/running → stopped (user stop request)
        failed → running (a failed step was retried)

    Terminal States:
        completed, stopped, cancelled (failed is terminal until a retry)
    """

    STARTING = "starting"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"
    CANCELLED = "cancelled"


class TriggerType(enum.Enum):
    """What started a run: a user action or the auto-run scheduler."""

    MANUAL = "manual"
    AUTO = "auto"


class StepType(enum.Enum):
    """Unit of generation work, one external job per step."""

    GENERATE_IMAGE = "generate_image"
    GENERATE_VIDEO = "generate_video"
    GENERATE_VOICE = "generate_voice"
    MERGE_VIDEOS = "merge_videos"


class StepStatus(enum.Enum):
    """Lifecycle of one step.

    Flow:
        pending → running (job submitted, external id recorded)
        running → completed | failed (resolved by the status poller)
        pending → failed (submission failed)
        failed → pending (retry)
        pending/running → cancelled (run stopped)
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class LogLevel(enum.Enum):
    """Severity of a run log entry (as shown in the run history view)."""

    INFO = "INFO"
    SUCCESS = "SUCCESS"
    WARN = "WARN"
    ERROR = "ERROR"


ACTIVE_RUN_STATUSES = [RunStatus.STARTING, RunStatus.RUNNING]
ACTIVE_STEP_STATUSES = [StepStatus.PENDING, StepStatus.RUNNING]
# Steps of these runs are not dispatched or polled any more
HALTED_RUN_STATUSES = [RunStatus.STOPPED, RunStatus.CANCELLED]


def _enum_column(enum_cls: type[enum.Enum], name: str) -> Enum:
    # values_callable stores enum.value (lowercase) rather than enum.name
    return Enum(
        enum_cls,
        native_enum=True,
        name=name,
        values_callable=lambda x: [e.value for e in x],
    )


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Product(Base):
    """Catalogue product a channel promotes."""

    __tablename__ = "products"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    sub_products: Mapped[list["SubProduct"]] = relationship(
        "SubProduct", back_populates="product", order_by="SubProduct.created_at"
    )

    def __repr__(self) -> str:
        return f"<Product(id={self.id!s:.8}, name={self.name!r})>"


class SubProduct(Base):
    """Per-product content target; the pipeline generates one asset set per sub-product."""

    __tablename__ = "sub_products"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    product_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    image_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    product: Mapped["Product"] = relationship("Product", back_populates="sub_products")

    def __repr__(self) -> str:
        return f"<SubProduct(id={self.id!s:.8}, name={self.name!r})>"


class Channel(Base):
    """Publishing channel whose content is automated.

    Attributes:
        product_id: Linked product; its sub-products are the run targets.
        character_image_url: Optional presenter/character reference image that is
            sent with every image generation job of the channel.
    """

    __tablename__ = "channels"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    product_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("products.id", ondelete="SET NULL"),
        nullable=True,
    )
    character_image_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    def __repr__(self) -> str:
        return f"<Channel(id={self.id!s:.8}, name={self.name!r})>"


class AutomationConfig(Base):
    """Per-channel automation settings (one row per channel).

    Prompt templates accept ``{{placeholder}}`` values, see
    automation.utils.templates.replace_placeholders.

    Attributes:
        image_prompt_template: Image prompt ({{product_name}}, {{product_description}},
            {{image_count}}, {{sequence_number}}).
        image_count: Image (and therefore video) steps per sub-product.
        video_prompt_template: Motion-prompt template sent to the text generator
            ({{product_name}}, {{product_description}}, {{image_prompt}}).
        voice_script_template: Voice script template sent to the text generator.
        voice_id: TTS voice. Voice steps are only created when both voice_id and
            voice_script_template are set.
        video_duration_seconds: Length of each generated video clip.
        transition / transition_duration_seconds: Crossfade used by the merge.
        merge_videos_enabled: Create a merge_videos step once a sub-product's
            clips are complete.
        auto_run_enabled / auto_run_count: Auto-trigger switch and daily limit.
        user_id: Config owner, recorded as acting user on auto runs.
    """

    __tablename__ = "automation_configs"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    channel_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("channels.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    user_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    image_prompt_template: Mapped[str] = mapped_column(Text, nullable=False)
    image_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    video_prompt_template: Mapped[str | None] = mapped_column(Text, nullable=True)
    voice_script_template: Mapped[str | None] = mapped_column(Text, nullable=True)
    voice_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    aspect_ratio: Mapped[str] = mapped_column(
        String(10), nullable=False, default="1:1", server_default="1:1"
    )
    video_duration_seconds: Mapped[float] = mapped_column(
        Float, nullable=False, default=5.0, server_default="5"
    )
    transition: Mapped[str] = mapped_column(
        String(30), nullable=False, default="fade", server_default="fade"
    )
    transition_duration_seconds: Mapped[float] = mapped_column(
        Float, nullable=False, default=1.0, server_default="1"
    )
    merge_videos_enabled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=text("true")
    )

    auto_run_enabled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    auto_run_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    @property
    def voice_enabled(self) -> bool:
        """True when voice steps should be generated for this channel."""
        return bool(self.voice_id and self.voice_script_template)

    def __repr__(self) -> str:
        return (
            f"<AutomationConfig(channel_id={self.channel_id!s:.8}, "
            f"auto_run_enabled={self.auto_run_enabled}, auto_run_count={self.auto_run_count})>"
        )


class AutomationRun(Base):
    """One execution of the pipeline for one channel.

    Single Active Run:
        At most one run per channel may be starting or running. The services
        check this before inserting, and the partial unique index
        uq_automation_runs_channel_active rejects a concurrent duplicate.

    finished_at:
        Set exactly once when the run reaches a terminal status; cleared only
        when a failed run is revived by a step retry.
    """

    __tablename__ = "automation_runs"

    VALID_TRANSITIONS = {
        RunStatus.STARTING: [
            RunStatus.RUNNING,
            RunStatus.FAILED,
            RunStatus.STOPPED,
            RunStatus.CANCELLED,
        ],
        RunStatus.RUNNING: [
            RunStatus.COMPLETED,
            RunStatus.FAILED,
            RunStatus.STOPPED,
            RunStatus.CANCELLED,
        ],
        RunStatus.FAILED: [RunStatus.RUNNING],  # Step retry revives the run
        RunStatus.COMPLETED: [],
        RunStatus.STOPPED: [],
        RunStatus.CANCELLED: [],
    }

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    channel_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("channels.id", ondelete="RESTRICT"),
        nullable=False,
    )
    user_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    status: Mapped[RunStatus] = mapped_column(
        _enum_column(RunStatus, "runstatus"),
        nullable=False,
        default=RunStatus.STARTING,
        index=True,
    )
    trigger_type: Mapped[TriggerType] = mapped_column(
        _enum_column(TriggerType, "triggertype"),
        nullable=False,
        default=TriggerType.MANUAL,
    )
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    steps: Mapped[list["AutomationRunStep"]] = relationship(
        "AutomationRunStep",
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="AutomationRunStep.created_at",
    )

    __table_args__ = (
        Index("ix_automation_runs_channel_started", "channel_id", "started_at"),
        Index(
            "uq_automation_runs_channel_active",
            "channel_id",
            unique=True,
            postgresql_where=text("status IN ('starting', 'running')"),
            sqlite_where=text("status IN ('starting', 'running')"),
        ),
    )

    @validates("status")
    def validate_status_change(self, key: str, value: RunStatus) -> RunStatus:
        """Enforce VALID_TRANSITIONS on every status assignment after creation."""
        if self.status is None or self.status == value:
            return value

        allowed_transitions = self.VALID_TRANSITIONS.get(self.status, [])
        if value not in allowed_transitions:
            raise InvalidStateTransitionError(
                f"Invalid run transition: {self.status.value} → {value.value}",
                from_status=self.status,
                to_status=value,
            )
        return value

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_RUN_STATUSES

    def finish(self, status: RunStatus, finished_at: datetime | None = None) -> None:
        """Move the run to a terminal status and stamp finished_at once."""
        self.status = status
        if self.finished_at is None:
            self.finished_at = finished_at or utcnow()

    def __repr__(self) -> str:
        return (
            f"<AutomationRun(id={self.id!s:.8}, status={self.status.value!r}, "
            f"trigger={self.trigger_type.value!r})>"
        )


class AutomationRunStep(Base):
    """One unit of generation work for one sub-product within a run.

    input_data by step type:
        generate_image: prompt, image_urls, aspect_ratio, sequence_number
        generate_video: source_image_step_id, image_url, image_prompt,
            sequence_number (prompt and duration are added at dispatch)
        generate_voice: voice_id (script is added at dispatch)
        merge_videos: video_urls, clips, audio_url, transition, transition_duration

    External Task Id:
        Never set while pending; always set while running. Steps that fail at
        submission time are failed without one.
    """

    __tablename__ = "automation_run_steps"

    VALID_TRANSITIONS = {
        StepStatus.PENDING: [StepStatus.RUNNING, StepStatus.FAILED, StepStatus.CANCELLED],
        StepStatus.RUNNING: [StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.CANCELLED],
        StepStatus.FAILED: [StepStatus.PENDING],  # Retry
        StepStatus.COMPLETED: [],
        StepStatus.CANCELLED: [],
    }

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    run_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("automation_runs.id", ondelete="CASCADE"),
        nullable=False,
    )
    sub_product_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("sub_products.id", ondelete="CASCADE"),
        nullable=False,
    )
    step_type: Mapped[StepType] = mapped_column(_enum_column(StepType, "steptype"), nullable=False)
    status: Mapped[StepStatus] = mapped_column(
        _enum_column(StepStatus, "stepstatus"),
        nullable=False,
        default=StepStatus.PENDING,
        index=True,
    )
    input_data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    output_data: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    external_task_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    run: Mapped["AutomationRun"] = relationship("AutomationRun", back_populates="steps")

    __table_args__ = (
        Index("ix_automation_run_steps_run_id_status", "run_id", "status"),
        Index("ix_automation_run_steps_run_sub_product", "run_id", "sub_product_id"),
    )

    @validates("status")
    def validate_status_change(self, key: str, value: StepStatus) -> StepStatus:
        """Enforce VALID_TRANSITIONS on every status assignment after creation."""
        if self.status is None or self.status == value:
            return value

        allowed_transitions = self.VALID_TRANSITIONS.get(self.status, [])
        if value not in allowed_transitions:
            raise InvalidStateTransitionError(
                f"Invalid step transition: {self.status.value} → {value.value}",
                from_status=self.status,
                to_status=value,
            )
        return value

    @property
    def sequence_number(self) -> int:
        return int((self.input_data or {}).get("sequence_number", 0))

    @property
    def result_url(self) -> str | None:
        return (self.output_data or {}).get("url")

    def mark_running(self, external_task_id: str) -> None:
        """Record a successful submission."""
        if not external_task_id:
            raise ValueError("external_task_id is required to mark a step running")
        self.status = StepStatus.RUNNING
        self.external_task_id = external_task_id

    def mark_completed(self, result_url: str | None) -> None:
        self.status = StepStatus.COMPLETED
        self.output_data = {"url": result_url}
        self.error_message = None

    def mark_failed(self, error_message: str) -> None:
        self.status = StepStatus.FAILED
        self.error_message = error_message

    def reset_for_retry(self) -> None:
        """Put a failed step back in the queue with a clean slate."""
        self.status = StepStatus.PENDING
        self.error_message = None
        self.external_task_id = None
        self.output_data = None
        self.retry_count = 0

    def __repr__(self) -> str:
        return (
            f"<AutomationRunStep(id={self.id!s:.8}, type={self.step_type.value!r}, "
            f"status={self.status.value!r})>"
        )


class AutomationRunLog(Base):
    """Append-only diagnostic log entry for a run (optionally a step).

    metadata carries raw request/response excerpts for provider calls. The
    column is named "metadata" in the database; the attribute is log_metadata
    because DeclarativeBase reserves ``metadata``.
    """

    __tablename__ = "automation_run_logs"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    run_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("automation_runs.id", ondelete="CASCADE"),
        nullable=False,
    )
    step_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("automation_run_steps.id", ondelete="CASCADE"),
        nullable=True,
    )
    message: Mapped[str] = mapped_column(Text, nullable=False)
    level: Mapped[LogLevel] = mapped_column(
        _enum_column(LogLevel, "loglevel"), nullable=False, default=LogLevel.INFO
    )
    log_metadata: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (Index("ix_automation_run_logs_run_created", "run_id", "created_at"),)

    def __repr__(self) -> str:
        return f"<AutomationRunLog(level={self.level.value!r}, message={self.message[:40]!r})>"
