"""Translation/speech gateway.

Wraps the remote translation and speech collaborator with the shared retry
discipline. A failed translation is never fatal: text degrades to the source
language, audio to None, and a translation_degraded receipt is published.
"""
import time
from typing import Callable, Protocol

from fieldlink.config import features
from fieldlink.core.errors import RetriesExhausted, TerminalError
from fieldlink.core.events import ReceiptBus
from fieldlink.core.retry import RetryPolicy, retry_call


class TranslationService(Protocol):
    def translate(self, text: str, dialect: str) -> str: ...

    def synthesize(self, text: str, dialect: str) -> bytes: ...

    def recognize(self, audio: bytes, language: str) -> str: ...


class TranslationGateway:
    def __init__(
        self,
        service: TranslationService | None,
        bus: ReceiptBus | None = None,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.service = service
        self.bus = bus or ReceiptBus()
        self.policy = policy or RetryPolicy()
        self.sleep = sleep

    @property
    def enabled(self) -> bool:
        return self.service is not None and features.FEATURE_TRANSLATION_ENABLED

    def _call(self, operation: str, fn: Callable[[], object], fallback, **context):
        try:
            return retry_call(fn, self.policy, sleep=self.sleep)
        except (RetriesExhausted, TerminalError) as e:
            self.bus.publish("translation_degraded", {
                "operation": operation,
                "error": repr(e),
                **context,
            })
            return fallback

    def translate(self, text: str, dialect: str, source_language: str | None = None) -> str:
        """Text in the farmer's dialect, or the source text on failure."""
        if not self.enabled or not text:
            return text
        if source_language is not None and source_language == dialect:
            return text
        return self._call(
            "translate",
            lambda: self.service.translate(text, dialect),
            text,
            dialect=dialect,
        )

    def synthesize(self, text: str, dialect: str) -> bytes | None:
        if not self.enabled or not text:
            return None
        return self._call(
            "synthesize",
            lambda: self.service.synthesize(text, dialect),
            None,
            dialect=dialect,
        )

    def recognize(self, audio: bytes, language: str) -> str | None:
        """Transcript of a voice note, or None when speech is unavailable."""
        if not self.enabled or not audio:
            return None
        return self._call(
            "recognize",
            lambda: self.service.recognize(audio, language),
            None,
            language=language,
        )
