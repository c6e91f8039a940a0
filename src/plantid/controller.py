"""Presentation controller: owns the display state and wires picks to results.

The controller is the only writer of :class:`DisplayState`. Every mutation
happens on the event loop: picks are awaited there and pipeline callbacks
are delivered there. Each pick bumps the state's generation; an outcome
tagged with an older generation is dropped, so a slow classification can
never overwrite the result for a newer photo.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from enum import StrEnum
from functools import partial
from typing import TYPE_CHECKING

from plantid.errors import CapabilityUnavailable
from plantid.pipeline import OutcomeStatus
from plantid.search import DEFAULT_SEARCH_DOMAIN, DEFAULT_SEARCH_SUFFIX, build_search_url
from plantid.sources import ImageSource

if TYPE_CHECKING:
    from plantid.pipeline import ClassificationOutcome, ClassificationPipeline
    from plantid.search import SearchLauncher
    from plantid.sources import CapturedImage, ImageSourceAdapter

logger = logging.getLogger(__name__)

DEFAULT_LABEL = "Tap the camera to start"
IDENTIFYING_LABEL = "Identifying..."
UNKNOWN_LABEL = "Unknown species"


@dataclass(frozen=True)
class DisplayState:
    """What the screen shows. Replaced, never mutated."""

    image: CapturedImage | None = None
    label_text: str = DEFAULT_LABEL
    search_url: str | None = None
    generation: int = 0
    pending: bool = False

    def with_image(self, image: CapturedImage) -> DisplayState:
        """A new photo was chosen; classification is about to start."""
        return replace(
            self,
            image=image,
            label_text=IDENTIFYING_LABEL,
            search_url=None,
            generation=self.generation + 1,
            pending=True,
        )

    def with_notice(self, text: str) -> DisplayState:
        """A pick failed before producing an image; older results are now stale."""
        return replace(
            self,
            label_text=text,
            search_url=None,
            generation=self.generation + 1,
            pending=False,
        )

    def with_result(self, text: str, search_url: str | None = None) -> DisplayState:
        return replace(self, label_text=text, search_url=search_url, pending=False)


class PickStatus(StrEnum):
    STARTED = "started"
    CANCELLED = "cancelled"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class PickResult:
    """What happened to a pick request."""

    status: PickStatus
    generation: int
    task: asyncio.Task[ClassificationOutcome] | None = None


def outcome_text(outcome: ClassificationOutcome) -> str:
    """Render an outcome as the short status line shown to the user."""
    if outcome.status is OutcomeStatus.IDENTIFIED and outcome.prediction is not None:
        return f"Identified: {outcome.prediction.label}"
    if outcome.status is OutcomeStatus.UNKNOWN:
        return UNKNOWN_LABEL
    if outcome.error is not None:
        return outcome.error.user_message
    return UNKNOWN_LABEL


class PlantIdController:
    """Owns the display state and reacts to picks and classification results."""

    def __init__(
        self,
        sources: ImageSourceAdapter,
        pipeline: ClassificationPipeline,
        launcher: SearchLauncher,
        *,
        search_domain: str = DEFAULT_SEARCH_DOMAIN,
        search_suffix: str = DEFAULT_SEARCH_SUFFIX,
        initial_label: str = DEFAULT_LABEL,
    ) -> None:
        self._sources = sources
        self._pipeline = pipeline
        self._launcher = launcher
        self._search_domain = search_domain
        self._search_suffix = search_suffix
        self._state = DisplayState(label_text=initial_label)
        # Strong references so fire-and-forget classifications are not collected.
        self._in_flight: set[asyncio.Task[ClassificationOutcome]] = set()
        self._launches: set[asyncio.Task[None]] = set()

    @property
    def state(self) -> DisplayState:
        return self._state

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def pick_from_camera(self) -> PickResult:
        """Capture a photo with the camera and start identifying it."""
        return await self._pick(ImageSource.CAMERA)

    async def pick_from_gallery(
        self,
        payload: bytes | None,
        filename: str | None = None,
        content_type: str | None = None,
    ) -> PickResult:
        """Use a gallery photo and start identifying it.

        An empty payload means the user backed out of the picker.
        """
        return await self._pick(ImageSource.GALLERY, payload, filename, content_type)

    async def _pick(
        self,
        source: ImageSource,
        payload: bytes | None = None,
        filename: str | None = None,
        content_type: str | None = None,
    ) -> PickResult:
        try:
            image = await self._sources.request_image(
                source,
                payload,
                filename=filename,
                content_type=content_type,
            )
        except CapabilityUnavailable as exc:
            logger.warning("Image source %s unavailable: %s", source, exc)
            self._state = self._state.with_notice(exc.user_message)
            return PickResult(status=PickStatus.UNAVAILABLE, generation=self._state.generation)

        if image is None:
            return PickResult(status=PickStatus.CANCELLED, generation=self._state.generation)

        self._state = self._state.with_image(image)
        generation = self._state.generation
        task = self._pipeline.submit(image.data, partial(self._on_classified, generation))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        return PickResult(status=PickStatus.STARTED, generation=generation, task=task)

    def _on_classified(self, generation: int, outcome: ClassificationOutcome) -> None:
        if generation != self._state.generation:
            logger.debug(
                "Dropping stale %s outcome for generation %d (current %d)",
                outcome.status,
                generation,
                self._state.generation,
            )
            return

        text = outcome_text(outcome)
        prediction = outcome.prediction
        if prediction is None:
            self._state = self._state.with_result(text)
            return

        url = build_search_url(prediction.label, self._search_domain, self._search_suffix)
        self._state = self._state.with_result(text, search_url=url)
        launch = asyncio.create_task(self._launch(url))
        self._launches.add(launch)
        launch.add_done_callback(self._launches.discard)

    async def _launch(self, url: str) -> None:
        # Browser launchers may wait on a child process; keep them off the loop.
        try:
            opened = await asyncio.to_thread(self._launcher.open, url)
        except Exception:
            logger.exception("Search launcher failed for %s", url)
            return
        if not opened:
            logger.debug("Search page not opened: %s", url)

    async def join(self) -> None:
        """Wait for in-flight classifications and browser launches to finish."""
        while self._in_flight or self._launches:
            await asyncio.gather(*self._in_flight, *self._launches, return_exceptions=True)
