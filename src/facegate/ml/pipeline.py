"""Face verification pipeline: detection, embedding, and comparison.

Architecture:
    bytes -> ImageBuffer -> DetectionChain (cascade, heuristic fallback)
          -> largest FaceBox -> padded crop -> EmbeddingExtractor
          -> Embedding -> VerificationEngine -> VerificationResult

The pipeline is constructed once and shared by reference. Until the model
loader finishes, and whenever a required model failed to load, it runs
heuristic detection with mock embeddings and says so through ``status``,
``active_strategy`` and the ``mock`` flag of every result.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from facegate.ml.antispoof import SpoofChecker
from facegate.ml.cascade import CascadeConfig, CascadeDetector
from facegate.ml.errors import InferenceError, ModelsNotReady, NoFaceDetected
from facegate.ml.face_detector import DetectionChain, DetectionResult, FaceBox, largest_face
from facegate.ml.face_recognizer import ContentAwareMockEmbedder, Embedding, EmbeddingExtractor, NetEmbeddingExtractor
from facegate.ml.heuristic import HeuristicDetector
from facegate.ml.model_manager import ANTI_SPOOFING_MODEL, CASCADE_MODELS, EMBEDDING_MODEL, LoadState
from facegate.ml.preprocessing import ImageBuffer, decode_image
from facegate.ml.verification import SimilarityScale, VerificationEngine, VerificationResult

if TYPE_CHECKING:
    from facegate.config import Settings
    from facegate.ml.model_manager import LoadReport, ModelLoader

logger = logging.getLogger(__name__)


class PipelineStrategy(StrEnum):
    """Detection + embedding combinations.

    CASCADE   -- MTCNN cascade (heuristic fallback) with the embedding network.
    HEURISTIC -- heuristic detector with the embedding network.
    MOCK      -- heuristic detector with content-aware mock embeddings.
    """

    CASCADE = "cascade"
    HEURISTIC = "heuristic"
    MOCK = "mock"


class PipelineStatus(StrEnum):
    NOT_LOADED = "not_loaded"
    LOADING = "loading"
    READY = "ready"
    DEGRADED = "degraded"


@dataclass(frozen=True)
class _Components:
    strategy: PipelineStrategy
    chain: DetectionChain
    extractor: EmbeddingExtractor
    spoof: SpoofChecker | None = None


@dataclass(frozen=True)
class ExtractedFace:
    """An embedding together with the face and strategy that produced it."""

    embedding: Embedding
    face: FaceBox
    detector: str
    fallback_used: bool
    strategy: PipelineStrategy
    spoof_suspected: bool | None = None


def _heuristic_detectors(settings: Settings) -> tuple[HeuristicDetector, ...]:
    """Configured heuristic detector, then the portrait-region box as a last resort."""
    primary = HeuristicDetector.from_settings(settings)
    if primary.mode == "simple":
        return (primary,)
    return (primary, HeuristicDetector(mode="simple"))


class FacePipeline:
    """Owns the detector, extractor and verification engine for one process."""

    def __init__(self, settings: Settings, loader: ModelLoader | None = None) -> None:
        self._settings = settings
        self._loader = loader
        self._strategy = PipelineStrategy(settings.strategy)
        self._engine = VerificationEngine(SimilarityScale(settings.similarity_scale), settings.similarity_threshold)
        self._heuristics = _heuristic_detectors(settings)
        self._degraded = _Components(
            strategy=PipelineStrategy.MOCK,
            chain=DetectionChain(*self._heuristics),
            extractor=ContentAwareMockEmbedder(
                settings.mock_embedding_dim,
                input_size=settings.embedding_input_size,
                padding=settings.face_padding,
            ),
        )
        self._components: _Components | None = self._degraded if self._strategy is PipelineStrategy.MOCK else None
        self._lock = threading.Lock()

    # -- State ----------------------------------------------------------------

    @property
    def strategy(self) -> PipelineStrategy:
        """The configured strategy."""
        return self._strategy

    @property
    def active_strategy(self) -> PipelineStrategy:
        """The strategy requests are served with right now."""
        return self._current().strategy

    @property
    def engine(self) -> VerificationEngine:
        return self._engine

    @property
    def status(self) -> PipelineStatus:
        components = self._current()
        if self._components is not None:
            return PipelineStatus.READY if components.strategy is self._strategy else PipelineStatus.DEGRADED
        if self._loader is None:
            return PipelineStatus.DEGRADED
        if self._loader.state is LoadState.LOADING:
            return PipelineStatus.LOADING
        return PipelineStatus.NOT_LOADED

    async def prepare(self, wait: bool | None = None, require_ready: bool = False) -> PipelineStatus:
        """Start model loading and optionally wait for it.

        Args:
            wait: Await the loader; defaults to ``Settings.wait_for_models``.
            require_ready: Raise instead of serving degraded results.

        Raises:
            ModelsNotReady: If ``require_ready`` and the configured strategy
                cannot be served.
        """
        if self._loader is not None and self._strategy is not PipelineStrategy.MOCK:
            self._loader.start()
            if self._settings.wait_for_models if wait is None else wait:
                await self._loader.wait()

        status = self.status
        if require_ready and status is not PipelineStatus.READY:
            raise ModelsNotReady(f"Pipeline is {status}, strategy {self.active_strategy} instead of {self._strategy}")
        return status

    # -- Operations -----------------------------------------------------------

    def load_image(self, image: bytes | ImageBuffer) -> ImageBuffer:
        if isinstance(image, ImageBuffer):
            return image
        return decode_image(image, self._settings.max_image_pixels)

    def detect(self, image: bytes | ImageBuffer, cascade_only: bool | None = None) -> DetectionResult:
        """Detect faces, falling back to the heuristic detector when needed."""
        return self._detect(self._current(), self.load_image(image), cascade_only)

    def extract(self, image: bytes | ImageBuffer, cascade_only: bool | None = None) -> ExtractedFace:
        """Embed the largest face in an image.

        Raises:
            DecodeFailure: If the bytes cannot be decoded.
            NoFaceDetected: If no detector found a face.
            DegenerateEmbedding: If the embedding has zero norm.
            InferenceError: If the embedding network fails.
        """
        return self._extract(self._current(), self.load_image(image), cascade_only)

    def verify(
        self,
        image_a: bytes | ImageBuffer,
        image_b: bytes | ImageBuffer,
        threshold: float | None = None,
        cascade_only: bool | None = None,
    ) -> VerificationResult:
        """Decide whether two images show the same person."""
        components = self._current()
        face_a = self._extract(components, self.load_image(image_a), cascade_only)
        face_b = self._extract(components, self.load_image(image_b), cascade_only)
        return self.compare(face_a, face_b, threshold)

    def compare(self, face_a: ExtractedFace, face_b: ExtractedFace, threshold: float | None = None) -> VerificationResult:
        """Verify two already extracted faces."""
        mode = str(face_a.strategy)
        if face_b.strategy is not face_a.strategy:
            mode = f"{face_a.strategy}/{face_b.strategy}"
        result = self._engine.verify(
            face_a.embedding.vector,
            face_b.embedding.vector,
            threshold=threshold,
            mode=mode,
            mock=face_a.embedding.is_mock or face_b.embedding.is_mock,
        )
        flags = [f.spoof_suspected for f in (face_a, face_b) if f.spoof_suspected is not None]
        if flags:
            result = dataclasses.replace(result, spoof_suspected=any(flags))
        return result

    # -- Internal -------------------------------------------------------------

    def _detect(self, components: _Components, image: ImageBuffer, cascade_only: bool | None) -> DetectionResult:
        if cascade_only is None:
            cascade_only = self._settings.cascade_only
        if cascade_only and components.strategy is not PipelineStrategy.CASCADE:
            raise ModelsNotReady(f"Cascade-only detection requested but pipeline runs {components.strategy}")
        return components.chain.detect(image, cascade_only=cascade_only)

    def _extract(self, components: _Components, image: ImageBuffer, cascade_only: bool | None) -> ExtractedFace:
        detection = self._detect(components, image, cascade_only)
        face = largest_face(detection.faces)
        if face is None:
            raise NoFaceDetected(f"No face found in {image.width}x{image.height} image")

        crop = components.extractor.prepare(image, face)
        embedding = components.extractor.embed(crop)

        spoof_suspected: bool | None = None
        if components.spoof is not None:
            try:
                score = components.spoof.score(crop)
            except InferenceError:
                logger.warning("Anti-spoofing check failed", exc_info=True)
            else:
                embedding = embedding.with_spoof_score(score)
                spoof_suspected = components.spoof.is_spoof(score)

        return ExtractedFace(
            embedding=embedding,
            face=face,
            detector=detection.detector,
            fallback_used=detection.fallback_used,
            strategy=components.strategy,
            spoof_suspected=spoof_suspected,
        )

    def _current(self) -> _Components:
        components = self._components
        if components is not None:
            return components

        report = self._loader.report if self._loader is not None else None
        if report is None:
            return self._degraded

        with self._lock:
            if self._components is None:
                self._components = self._build(report)
            return self._components

    def _build(self, report: LoadReport) -> _Components:
        settings = self._settings
        needed = [EMBEDDING_MODEL]
        if self._strategy is PipelineStrategy.CASCADE:
            needed.extend(CASCADE_MODELS)
        missing = [name for name in needed if not report.has(name)]
        if missing:
            logger.warning(
                "Required models unavailable (%s); serving heuristic detection with mock embeddings",
                ", ".join(missing),
            )
            return self._degraded

        try:
            extractor = NetEmbeddingExtractor(
                report.runtimes[EMBEDDING_MODEL],
                embedding_dim=settings.embedding_dim,
                input_size=settings.embedding_input_size,
                padding=settings.face_padding,
            )
            if self._strategy is PipelineStrategy.CASCADE:
                pnet, rnet, onet = (report.runtimes[name] for name in CASCADE_MODELS)
                cascade = CascadeDetector(pnet, rnet, onet, CascadeConfig.from_settings(settings))
                chain = DetectionChain(cascade, *self._heuristics)
            else:
                chain = DetectionChain(*self._heuristics)
        except InferenceError:
            logger.exception("Loaded models are unusable; serving heuristic detection with mock embeddings")
            return self._degraded

        spoof: SpoofChecker | None = None
        if report.has(ANTI_SPOOFING_MODEL):
            try:
                spoof = SpoofChecker(report.runtimes[ANTI_SPOOFING_MODEL], settings.spoof_threshold)
            except InferenceError as exc:
                logger.warning("Anti-spoofing disabled: %s", exc)

        logger.info(
            "Pipeline ready: strategy=%s, embedding=%s (%d dims), anti-spoofing=%s",
            self._strategy,
            extractor.model_name,
            extractor.embedding_dim,
            spoof is not None,
        )
        return _Components(strategy=self._strategy, chain=chain, extractor=extractor, spoof=spoof)
