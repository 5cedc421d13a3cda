"""Provider lookup by step type.

One registry is built per process (FastAPI lifespan or cron worker run) and
passed to the services, which keeps providers swappable in tests:

    providers = ProviderRegistry.from_environment()
    provider = providers.for_step(StepType.GENERATE_IMAGE)
    ...
    await providers.close()
"""

from dataclasses import dataclass

from automation.clients.base import GenerationProvider, TextGenerator
from automation.clients.gemini import GeminiClient
from automation.clients.higgsfield import HiggsfieldClient
from automation.clients.rendi import RendiClient
from automation.clients.voice import VoiceClient
from automation.exceptions import ConfigurationError
from automation.models import StepType


@dataclass
class ProviderRegistry:
    """Generation providers keyed by step type plus the text generator."""

    providers: dict[StepType, GenerationProvider]
    text_generator: TextGenerator

    @classmethod
    def from_environment(cls) -> "ProviderRegistry":
        """Build the production registry from environment configuration.

        Credentials are checked lazily, on the first call that needs them, so a
        missing key fails only the steps of that provider.
        """
        higgsfield = HiggsfieldClient()
        return cls(
            providers={
                StepType.GENERATE_IMAGE: higgsfield,
                StepType.GENERATE_VIDEO: higgsfield,
                StepType.GENERATE_VOICE: VoiceClient(),
                StepType.MERGE_VIDEOS: RendiClient(),
            },
            text_generator=GeminiClient(),
        )

    def for_step(self, step_type: StepType) -> GenerationProvider:
        try:
            return self.providers[step_type]
        except KeyError:
            raise ConfigurationError(f"No provider registered for {step_type.value}") from None

    async def close(self) -> None:
        """Close every distinct provider once."""
        seen: set[int] = set()
        for provider in [*self.providers.values(), self.text_generator]:
            if id(provider) in seen:
                continue
            seen.add(id(provider))
            await provider.close()
