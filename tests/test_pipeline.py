"""End-to-end tests for the face pipeline over stand-in networks."""

from __future__ import annotations

import numpy as np
import pytest

from conftest import FakeModelManager, fake_anti_spoofing, fake_runtimes, make_settings, portrait_image
from facegate.ml.errors import DecodeFailure, ModelsNotReady, NoFaceDetected
from facegate.ml.model_manager import ModelLoader
from facegate.ml.pipeline import ExtractedFace, FacePipeline, PipelineStatus, PipelineStrategy
from facegate.ml.preprocessing import ImageBuffer, encode_png


def _pipeline(runtimes: dict[str, object] | None = None, **overrides: object) -> FacePipeline:
    settings = make_settings(**{"min_face_size": 40.0, **overrides})
    manager = FakeModelManager(fake_runtimes() if runtimes is None else runtimes)  # type: ignore[arg-type]
    return FacePipeline(settings, ModelLoader(manager))


def _solid_portrait(rgb: tuple[int, int, int]) -> bytes:
    return encode_png(ImageBuffer.filled(480, 640, rgb))


class TestCascadeStrategy:
    async def test_self_verification(self) -> None:
        pipeline = _pipeline()
        assert await pipeline.prepare(wait=True) is PipelineStatus.READY
        image = encode_png(portrait_image())

        result = pipeline.verify(image, image)

        assert result.valid
        assert result.match
        assert result.similarity == pytest.approx(1.0, abs=1e-5)
        assert result.confidence == pytest.approx(1.0, abs=1e-4)
        assert result.mode == "cascade"
        assert result.mock is False
        assert result.spoof_suspected is None

    async def test_extract_reports_detector(self) -> None:
        pipeline = _pipeline()
        await pipeline.prepare(wait=True)

        extracted = pipeline.extract(portrait_image())

        assert extracted.detector == "mtcnn"
        assert extracted.fallback_used is False
        assert extracted.strategy is PipelineStrategy.CASCADE
        assert extracted.embedding.dimension == 128
        assert not extracted.embedding.is_mock
        assert np.linalg.norm(extracted.embedding.vector) == pytest.approx(1.0, abs=1e-5)

    async def test_heuristic_fallback_when_cascade_finds_nothing(self) -> None:
        pipeline = _pipeline(heuristic_mode="simple")
        await pipeline.prepare(wait=True)

        result = pipeline.detect(_solid_portrait((0, 0, 0)))

        assert result.fallback_used is True
        assert result.detector == "heuristic_simple"
        assert len(result.faces) == 1

    async def test_cascade_only_disables_fallback(self) -> None:
        pipeline = _pipeline(heuristic_mode="simple")
        await pipeline.prepare(wait=True)
        dark = _solid_portrait((0, 0, 0))

        assert pipeline.detect(dark, cascade_only=True).faces == []
        with pytest.raises(NoFaceDetected):
            pipeline.extract(dark, cascade_only=True)

    async def test_anti_spoofing_flags_result(self) -> None:
        runtimes = fake_runtimes()
        runtimes["anti_spoofing"] = fake_anti_spoofing([0.5, 0.25], [1.0, 1.0])
        pipeline = _pipeline(runtimes)  # type: ignore[arg-type]
        await pipeline.prepare(wait=True)
        image = portrait_image()

        face = pipeline.extract(image)
        result = pipeline.verify(image, image)

        assert face.embedding.spoof_score == pytest.approx(0.75)
        assert face.spoof_suspected is True
        assert result.spoof_suspected is True


class TestDegradedOperation:
    async def test_missing_model_degrades_to_mock(self) -> None:
        runtimes = fake_runtimes()
        del runtimes["onet"]
        pipeline = _pipeline(runtimes, heuristic_mode="simple")  # type: ignore[arg-type]

        status = await pipeline.prepare(wait=True)

        assert status is PipelineStatus.DEGRADED
        assert pipeline.strategy is PipelineStrategy.CASCADE
        assert pipeline.active_strategy is PipelineStrategy.MOCK
        result = pipeline.verify(_solid_portrait((200, 150, 120)), _solid_portrait((200, 150, 120)))
        assert result.mock is True
        assert result.mode == "mock"
        assert result.match is True

    async def test_require_ready_raises_when_degraded(self) -> None:
        runtimes = fake_runtimes()
        del runtimes["mobilefacenet"]
        pipeline = _pipeline(runtimes)  # type: ignore[arg-type]
        with pytest.raises(ModelsNotReady):
            await pipeline.prepare(wait=True, require_ready=True)

    async def test_loading_status_before_models_arrive(self) -> None:
        pipeline = _pipeline()
        loader = pipeline._loader
        assert loader is not None
        assert pipeline.status is PipelineStatus.NOT_LOADED

        assert await pipeline.prepare(wait=False) is PipelineStatus.LOADING
        assert pipeline.active_strategy is PipelineStrategy.MOCK
        with pytest.raises(ModelsNotReady):
            await pipeline.prepare(wait=False, require_ready=True)

        await loader.wait()
        assert pipeline.status is PipelineStatus.READY
        assert pipeline.active_strategy is PipelineStrategy.CASCADE

    async def test_mismatched_embedding_dim_degrades(self) -> None:
        pipeline = _pipeline(embedding_dim=512)
        assert await pipeline.prepare(wait=True) is PipelineStatus.DEGRADED

    def test_without_loader_is_degraded(self) -> None:
        pipeline = FacePipeline(make_settings())
        assert pipeline.status is PipelineStatus.DEGRADED
        assert pipeline.active_strategy is PipelineStrategy.MOCK

    def test_cascade_only_unavailable_while_degraded(self) -> None:
        pipeline = FacePipeline(make_settings())
        with pytest.raises(ModelsNotReady):
            pipeline.detect(portrait_image(), cascade_only=True)

    def test_default_settings_fall_back_to_portrait_region(self) -> None:
        pipeline = FacePipeline(make_settings())

        result = pipeline.detect(_solid_portrait((255, 0, 0)))

        assert result.detector == "heuristic_simple"
        assert result.fallback_used is True
        assert len(result.faces) == 1

    def test_red_and_blue_do_not_match_with_default_settings(self) -> None:
        pipeline = FacePipeline(make_settings())

        result = pipeline.verify(_solid_portrait((255, 0, 0)), _solid_portrait((0, 0, 255)))

        assert result.valid
        assert result.mock is True
        assert result.match is False
        assert result.similarity == pytest.approx(1 / 3, abs=1e-4)


class TestOtherStrategies:
    async def test_heuristic_strategy_uses_embedding_network(self) -> None:
        runtimes = {"mobilefacenet": fake_runtimes()["mobilefacenet"]}
        pipeline = _pipeline(runtimes, strategy="heuristic", heuristic_mode="simple")  # type: ignore[arg-type]

        assert await pipeline.prepare(wait=True) is PipelineStatus.READY
        extracted = pipeline.extract(portrait_image())
        assert extracted.detector == "heuristic_simple"
        assert extracted.strategy is PipelineStrategy.HEURISTIC
        assert not extracted.embedding.is_mock

    async def test_mock_strategy_never_loads(self) -> None:
        manager = FakeModelManager(fake_runtimes())
        pipeline = FacePipeline(make_settings(strategy="mock", heuristic_mode="simple"), ModelLoader(manager))

        assert await pipeline.prepare(wait=True) is PipelineStatus.READY
        assert manager.requested == []

        result = pipeline.verify(_solid_portrait((255, 0, 0)), _solid_portrait((0, 0, 255)))
        assert result.mock is True
        assert result.match is False
        assert result.similarity == pytest.approx(1 / 3, abs=1e-4)

    def test_compare_mixed_strategies(self) -> None:
        pipeline = FacePipeline(make_settings(strategy="mock", heuristic_mode="simple"))
        face = pipeline.extract(_solid_portrait((90, 90, 90)))
        other = ExtractedFace(
            embedding=face.embedding,
            face=face.face,
            detector="mtcnn",
            fallback_used=False,
            strategy=PipelineStrategy.CASCADE,
        )

        result = pipeline.compare(face, other, threshold=0.99)

        assert result.mode == "mock/cascade"
        assert result.threshold == 0.99
        assert result.match is True

    def test_undecodable_bytes(self) -> None:
        pipeline = FacePipeline(make_settings(strategy="mock"))
        with pytest.raises(DecodeFailure):
            pipeline.verify(b"nope", b"nope")
