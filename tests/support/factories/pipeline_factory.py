"""
Data factories for the catalogue, channel configuration and run tables.

Each factory commits its rows in its own transaction, the same way the
services see data written by the configuration screens.

Usage:
    seeded = await seed_channel(session_factory, sub_product_names=["Mug", "Cup"])
    run = await create_run(session_factory, seeded.channel_id, status=RunStatus.RUNNING)
    step = await create_step(session_factory, run.id, seeded.sub_product_ids[0])
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from automation.models import (
    AutomationConfig,
    AutomationRun,
    AutomationRunStep,
    Channel,
    Product,
    RunStatus,
    StepStatus,
    StepType,
    SubProduct,
    TriggerType,
    utcnow,
)

DEFAULT_IMAGE_PROMPT = "Studio photo of {{product_name}} ({{sequence_number}}/{{image_count}})"


@dataclass
class SeededChannel:
    channel_id: uuid.UUID
    product_id: uuid.UUID | None
    sub_product_ids: list[uuid.UUID] = field(default_factory=list)


async def seed_channel(
    session_factory,
    *,
    sub_product_names: list[str] | tuple[str, ...] = ("Mug",),
    linked: bool = True,
    with_config: bool = True,
    image_count: int = 1,
    voice: bool = False,
    merge: bool = True,
    video_prompt_template: str | None = None,
    auto_run_enabled: bool = False,
    auto_run_count: int = 0,
    user_id: str | None = "owner-1",
    character_image_url: str | None = None,
    **config_overrides: Any,
) -> SeededChannel:
    """Create product, sub-products, channel and (optionally) its config.

    Args:
        sub_product_names: One sub-product per name, created in this order
        linked: Link the channel to the product
        with_config: Create an AutomationConfig for the channel
        voice: Enable voice steps (sets voice_id and voice_script_template)
        **config_overrides: Any other AutomationConfig column
    """
    base_time = utcnow() - timedelta(days=1)

    async with session_factory() as session, session.begin():
        product = Product(name="Kitchen Line")
        session.add(product)
        await session.flush()

        sub_products = [
            SubProduct(
                product_id=product.id,
                name=name,
                description=f"{name} description",
                image_url=f"https://cdn.example.com/{name.lower()}.png",
                created_at=base_time + timedelta(seconds=index),
            )
            for index, name in enumerate(sub_product_names)
        ]
        session.add_all(sub_products)

        channel = Channel(
            name="Test Channel",
            product_id=product.id if linked else None,
            character_image_url=character_image_url,
        )
        session.add(channel)
        await session.flush()

        if with_config:
            session.add(
                AutomationConfig(
                    channel_id=channel.id,
                    user_id=user_id,
                    image_prompt_template=DEFAULT_IMAGE_PROMPT,
                    image_count=image_count,
                    video_prompt_template=video_prompt_template,
                    voice_script_template="Voice-over for {{product_name}}" if voice else None,
                    voice_id="voice-123" if voice else None,
                    merge_videos_enabled=merge,
                    auto_run_enabled=auto_run_enabled,
                    auto_run_count=auto_run_count,
                    **config_overrides,
                )
            )
            await session.flush()

        return SeededChannel(
            channel_id=channel.id,
            product_id=product.id,
            sub_product_ids=[sub_product.id for sub_product in sub_products],
        )


async def create_run(
    session_factory,
    channel_id: uuid.UUID,
    *,
    status: RunStatus = RunStatus.RUNNING,
    trigger_type: TriggerType = TriggerType.MANUAL,
    started_at: datetime | None = None,
    finished_at: datetime | None = None,
    user_id: str | None = None,
) -> AutomationRun:
    """Insert a run directly in the given status."""
    async with session_factory() as session, session.begin():
        run = AutomationRun(
            channel_id=channel_id,
            user_id=user_id,
            status=status,
            trigger_type=trigger_type,
            started_at=started_at or utcnow(),
            finished_at=finished_at,
        )
        session.add(run)
        await session.flush()
        return run


async def create_step(
    session_factory,
    run_id: uuid.UUID,
    sub_product_id: uuid.UUID,
    *,
    step_type: StepType = StepType.GENERATE_IMAGE,
    status: StepStatus = StepStatus.PENDING,
    input_data: dict[str, Any] | None = None,
    result_url: str | None = None,
    external_task_id: str | None = None,
    error_message: str | None = None,
    updated_at: datetime | None = None,
) -> AutomationRunStep:
    """Insert a step directly in the given status."""
    async with session_factory() as session, session.begin():
        step = AutomationRunStep(
            run_id=run_id,
            sub_product_id=sub_product_id,
            step_type=step_type,
            status=status,
            input_data=input_data if input_data is not None else {"prompt": "A mug"},
            output_data={"url": result_url} if result_url else None,
            external_task_id=external_task_id,
            error_message=error_message,
        )
        if updated_at is not None:
            step.updated_at = updated_at
        session.add(step)
        await session.flush()
        return step


async def create_completed_clip(
    session_factory,
    run_id: uuid.UUID,
    sub_product_id: uuid.UUID,
    sequence_number: int,
    *,
    duration: float = 5.0,
) -> tuple[AutomationRunStep, AutomationRunStep]:
    """Insert a completed image step and the completed video made from it."""
    image = await create_step(
        session_factory,
        run_id,
        sub_product_id,
        status=StepStatus.COMPLETED,
        input_data={"prompt": f"Image {sequence_number}", "sequence_number": sequence_number},
        result_url=f"https://cdn.example.com/image-{sequence_number}.png",
        external_task_id=f"image-task-{sequence_number}",
    )
    video = await create_step(
        session_factory,
        run_id,
        sub_product_id,
        step_type=StepType.GENERATE_VIDEO,
        status=StepStatus.COMPLETED,
        input_data={
            "source_image_step_id": str(image.id),
            "image_url": image.result_url,
            "sequence_number": sequence_number,
            "duration": duration,
        },
        result_url=f"https://cdn.example.com/video-{sequence_number}.mp4",
        external_task_id=f"video-task-{sequence_number}",
    )
    return image, video
