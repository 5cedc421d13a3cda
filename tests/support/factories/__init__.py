# Data factories for test data generation

from tests.support.factories.pipeline_factory import (
    SeededChannel,
    create_completed_clip,
    create_run,
    create_step,
    seed_channel,
)

__all__ = [
    "SeededChannel",
    "create_completed_clip",
    "create_run",
    "create_step",
    "seed_channel",
]
