"""
Response Pipeline — transcript → generation → segmentation → synthesis → delivery.

One run per accepted user turn:

- Sentence-level streaming: synthesis starts on the first complete sentence
  while generation is still producing the rest
- Concurrent synthesis: several fragments synthesize at once, bounded by a
  semaphore
- Ordered delivery: a reorder buffer keyed by ordinal releases fragments
  strictly in segmentation order, whatever order synthesis finishes in
- Epoch cancellation: the run is tagged with the session's generation epoch;
  once the epoch moves on, nothing from this run is released and no new
  work is started. In-flight synthesis is never awaited or cancelled by the
  interrupter, results are simply discarded
- Failure isolation: a failed fragment is skipped, later fragments still flow;
  a generation failure aborts the run
"""
from __future__ import annotations

import asyncio
import time
import structlog
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, Optional

from models.schemas import AudioFragment, Capabilities, HistoryEntry, Persona
from voice.errors import GenerationError, SynthesisError
from voice.generation import GenerationClient
from voice.latency import TurnLatencyTracker, TurnStage
from voice.segmenter import SentenceSegmenter
from voice.synthesis import SynthesisClient

logger = structlog.get_logger()

FragmentSink = Callable[[AudioFragment], Awaitable[None]]
ThinkingSink = Callable[[str, str], Awaitable[None]]


@dataclass
class PipelineResult:
    text: str = ""
    fragments_sent: int = 0
    fragments_failed: int = 0
    cancelled: bool = False
    error: Optional[GenerationError] = None

    @property
    def completed(self) -> bool:
        return not self.cancelled and self.error is None


class ResponsePipeline:
    """A single cancellable response run, bound to one generation epoch."""

    def __init__(
        self,
        generator: GenerationClient,
        synthesizer: SynthesisClient,
        *,
        epoch: int,
        is_current: Callable[[int], bool],
        emit: FragmentSink,
        on_thinking: Optional[ThinkingSink] = None,
        min_fragment_chars: int = 3,
        max_parallel: int = 3,
        latency: Optional[TurnLatencyTracker] = None,
        session_id: str = "",
    ):
        self.generator = generator
        self.synthesizer = synthesizer
        self.epoch = epoch
        self._is_current = is_current
        self._emit = emit
        self._on_thinking = on_thinking
        self._segmenter = SentenceSegmenter(min_chars=min_fragment_chars)
        self._semaphore = asyncio.Semaphore(max(1, max_parallel))
        self._release_lock = asyncio.Lock()
        self.latency = latency
        self.session_id = session_id

        self._tasks: set[asyncio.Task] = set()
        self._ready: dict[int, Optional[tuple[str, bytes]]] = {}
        self._next_ordinal = 1
        self._next_release = 1
        self._total: Optional[int] = None
        self._released_any = False
        self._stopped = False
        self.result = PipelineResult()

    @property
    def is_current(self) -> bool:
        return not self._stopped and self._is_current(self.epoch)

    # ── run ───────────────────────────────────────────────────

    async def run(
        self,
        history: Iterable[HistoryEntry],
        *,
        model: Optional[str] = None,
        capabilities: Optional[Capabilities] = None,
        persona: Optional[Persona] = None,
    ) -> PipelineResult:
        logger.info("pipeline_started", session_id=self.session_id, epoch=self.epoch)
        full_text = ""
        stream = self.generator.stream(
            list(history), model=model, capabilities=capabilities, persona=persona,
        )
        try:
            async for token in stream:
                if not self._check_current():
                    break
                if self.latency:
                    self.latency.mark(TurnStage.GENERATION_TTFB)
                full_text += token
                if self._on_thinking:
                    await self._on_thinking(token, full_text)
                for unit in self._segmenter.feed(token):
                    self._dispatch(unit)
        except GenerationError as e:
            logger.error("pipeline_generation_failed", session_id=self.session_id,
                         epoch=self.epoch, error=str(e))
            self._stopped = True
            self.result.error = e
            self.result.text = full_text.strip()
            return self.result
        finally:
            await stream.aclose()

        self.result.text = full_text.strip()
        if self.result.cancelled:
            return self._finish()

        tail = self._segmenter.flush()
        if tail and self._check_current():
            self._dispatch(tail)
        self._total = self._next_ordinal - 1

        if self._tasks and self.is_current:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        return self._finish()

    def _finish(self) -> PipelineResult:
        if not self.result.cancelled and not self._is_current(self.epoch):
            self.result.cancelled = True
        if self.latency and self.result.completed:
            self.latency.mark(TurnStage.TURN_TOTAL)
        logger.info(
            "pipeline_finished", session_id=self.session_id, epoch=self.epoch,
            fragments_sent=self.result.fragments_sent,
            fragments_failed=self.result.fragments_failed,
            cancelled=self.result.cancelled, chars=len(self.result.text),
        )
        return self.result

    # ── work dispatch ─────────────────────────────────────────

    def _check_current(self) -> bool:
        if self.is_current:
            return True
        if not self.result.cancelled and self.result.error is None:
            self.result.cancelled = True
            self._stopped = True
            logger.info("pipeline_cancelled", session_id=self.session_id, epoch=self.epoch)
        return False

    def _dispatch(self, text: str) -> None:
        if not self._check_current():
            return
        ordinal = self._next_ordinal
        self._next_ordinal += 1
        task = asyncio.create_task(self._synthesize(ordinal, text))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _synthesize(self, ordinal: int, text: str) -> None:
        async with self._semaphore:
            if not self._check_current():
                return
            started = time.perf_counter()
            try:
                audio = await self.synthesizer.synthesize(text)
                self._ready[ordinal] = (text, audio)
            except SynthesisError as e:
                logger.warning("fragment_synthesis_failed", session_id=self.session_id,
                               epoch=self.epoch, ordinal=ordinal, error=str(e))
                self.result.fragments_failed += 1
                self._ready[ordinal] = None
            if self.latency:
                self.latency.record(TurnStage.SYNTHESIS, (time.perf_counter() - started) * 1000)
        await self._release_ready()

    # ── ordered release ───────────────────────────────────────

    async def _release_ready(self) -> None:
        async with self._release_lock:
            while self._next_release in self._ready:
                if not self._check_current():
                    self._ready.clear()
                    return
                ordinal = self._next_release
                item = self._ready.pop(ordinal)
                self._next_release += 1
                if item is None:
                    continue
                text, audio = item
                fragment = AudioFragment(
                    text=text,
                    audio=audio,
                    ordinal=ordinal,
                    is_first=not self._released_any,
                    is_final=self._total is not None and ordinal == self._total,
                    epoch=self.epoch,
                )
                self._released_any = True
                await self._emit(fragment)
                self.result.fragments_sent += 1
                if self.latency:
                    self.latency.mark(TurnStage.FIRST_AUDIO)
                logger.debug("fragment_released", session_id=self.session_id,
                             epoch=self.epoch, ordinal=ordinal, final=fragment.is_final)
