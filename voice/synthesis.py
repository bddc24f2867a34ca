"""
Synthesis Client — text → audio with a bounded cache of short phrases.

The cache is keyed by exact text and only holds short phrases (greetings,
acknowledgements), which repeat often and are cheap to keep. Longer texts
always go to the provider.
"""
from __future__ import annotations

import abc
import asyncio
import time
import structlog
from collections import OrderedDict
from typing import Any, Optional

from config.settings import TTSConfig
from voice.errors import SynthesisError

logger = structlog.get_logger()


class SynthesisCache:
    """LRU cache of synthesized audio, bounded in entries and key length."""

    def __init__(self, max_entries: int = 200, max_text_length: int = 30):
        self.max_entries = max_entries
        self.max_text_length = max_text_length
        self._entries: OrderedDict[str, bytes] = OrderedDict()
        self.hits = 0
        self.misses = 0

    def cacheable(self, text: str) -> bool:
        return 0 < len(text) <= self.max_text_length

    def get(self, text: str) -> Optional[bytes]:
        audio = self._entries.get(text)
        if audio is None:
            self.misses += 1
            return None
        self._entries.move_to_end(text)
        self.hits += 1
        return audio

    def put(self, text: str, audio: bytes) -> bool:
        if not self.cacheable(text) or not audio:
            return False
        self._entries[text] = audio
        self._entries.move_to_end(text)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)
        return True

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, text: str) -> bool:
        return text in self._entries

    def to_dict(self) -> dict[str, Any]:
        return {
            "entries": len(self._entries),
            "max_entries": self.max_entries,
            "hits": self.hits,
            "misses": self.misses,
        }


class SynthesisClient(abc.ABC):
    """Base class for synthesis providers. Subclasses implement ``_synthesize``."""

    provider: str = "base"

    def __init__(self, cache: Optional[SynthesisCache] = None):
        self.cache = cache if cache is not None else SynthesisCache()

    @abc.abstractmethod
    async def _synthesize(self, text: str) -> bytes:
        ...

    async def synthesize(self, text: str) -> bytes:
        """Return audio for ``text``. Raises SynthesisError on provider failure."""
        text = text.strip()
        if not text:
            raise SynthesisError("Cannot synthesize empty text", retryable=False)

        cached = self.cache.get(text) if self.cache.cacheable(text) else None
        if cached is not None:
            logger.debug("synthesis_cache_hit", text=text)
            return cached

        started = time.perf_counter()
        try:
            audio = await self._synthesize(text)
        except SynthesisError:
            raise
        except Exception as e:
            logger.error("synthesis_failed", provider=self.provider, text=text[:40], error=str(e))
            raise SynthesisError(f"{self.provider} synthesis failed: {e}") from e

        if not audio:
            raise SynthesisError(f"{self.provider} returned no audio")

        self.cache.put(text, audio)
        logger.debug(
            "synthesis_complete", provider=self.provider, chars=len(text),
            bytes=len(audio), duration_ms=round((time.perf_counter() - started) * 1000, 1),
        )
        return audio

    async def warmup(self, phrases: list[str]) -> int:
        """Pre-synthesize common phrases into the cache. Returns how many succeeded."""
        warmed = 0
        for phrase in phrases:
            try:
                await self.synthesize(phrase)
                warmed += 1
            except SynthesisError as e:
                logger.warning("synthesis_warmup_failed", phrase=phrase, error=str(e))
        logger.info("synthesis_cache_warmed", warmed=warmed, total=len(phrases))
        return warmed


class PollySynthesisClient(SynthesisClient):
    """Amazon Polly via boto3. The blocking SDK call runs in a worker thread."""

    provider = "polly"

    def __init__(self, config: TTSConfig, cache: Optional[SynthesisCache] = None):
        super().__init__(cache or SynthesisCache(config.cache_max_entries, config.cache_max_text_length))
        self.config = config
        self._client = None

    def _get_client(self):
        if self._client is None:
            import boto3
            self._client = boto3.client("polly", region_name=self.config.region)
            logger.info("polly_client_initialized", region=self.config.region,
                        voice=self.config.voice_id)
        return self._client

    def _synthesize_blocking(self, text: str) -> bytes:
        client = self._get_client()
        response = client.synthesize_speech(Text=text, **self.config.to_polly_params())
        stream = response.get("AudioStream")
        if stream is None:
            return b""
        try:
            return stream.read()
        finally:
            stream.close()

    async def _synthesize(self, text: str) -> bytes:
        return await asyncio.to_thread(self._synthesize_blocking, text)


def create_synthesis_client(config: TTSConfig) -> SynthesisClient:
    """Factory: build the synthesis client for the configured provider."""
    if config.provider == "polly":
        return PollySynthesisClient(config)
    raise ValueError(f"Unknown TTS provider: {config.provider}")
