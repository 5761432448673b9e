"""Bot mitigation and challenge verification for form submissions."""

from formguard.challenge import ChallengeClient, ChallengeToken, ChallengeWidget
from formguard.config import RateLimitConfig, SecurityConfig
from formguard.events import EventBus, EventRecord, EventType, SecurityEvent
from formguard.pipeline import (BotSignalPolicy, PipelineResult, PipelineState,
                                SubmissionPipeline)
from formguard.signals import (FormTimer, SecuritySignal, SignalCollector,
                               SubmissionAttempt)
from formguard.verification import TokenVerifier, VerificationVerdict
from formguard.webhooks import WebhookDispatcher, WebhookTarget

__version__ = "1.0.0"
