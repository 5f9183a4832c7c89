"""Tests for the FaceGate HTTP API."""

from __future__ import annotations

import io
import os
from typing import TYPE_CHECKING
from unittest.mock import patch

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

import httpx
import pytest
from fastapi import FastAPI, status

from conftest import FakeModelManager, fake_runtimes, portrait_image
from facegate.config import get_settings
from facegate.main import create_app, init_app_state
from facegate.ml.inference import InferencePool
from facegate.ml.model_manager import ModelLoader
from facegate.ml.pipeline import FacePipeline
from facegate.ml.preprocessing import ImageBuffer, encode_png

MOCK_ENV = {"FACEGATE_STRATEGY": "mock", "FACEGATE_HEURISTIC_MODE": "simple"}


def _init_app_state(app: FastAPI, **env_overrides: str) -> None:
    """Manually initialize app state (ASGITransport does not trigger lifespan)."""
    with patch.dict(os.environ, {**MOCK_ENV, **env_overrides}):
        settings = get_settings()
    init_app_state(app, settings)


async def _make_client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://testserver",
    ) as ac:
        yield ac
    app.state.model_loader.cancel()
    pool: InferencePool = app.state.inference_pool
    pool.shutdown()


def _png(image: ImageBuffer) -> io.BytesIO:
    return io.BytesIO(encode_png(image))


def _solid(rgb: tuple[int, int, int], width: int = 480, height: int = 640) -> io.BytesIO:
    return _png(ImageBuffer.filled(width, height, rgb))


@pytest.fixture()
def app() -> FastAPI:
    """Create a fresh app instance serving mock embeddings."""
    application = create_app()
    _init_app_state(application)
    return application


@pytest.fixture()
async def client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    """Async HTTP client for testing the app."""
    async for ac in _make_client(app):
        yield ac


class TestHealthEndpoint:
    async def test_health_returns_ok(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "ok"
        assert data["gpu"] is False
        assert data["pipeline_status"] == "ready"
        assert data["strategy"] == "mock"
        assert data["active_strategy"] == "mock"
        assert isinstance(data["models_loaded"], list)
        assert isinstance(data["concurrent_requests"], int)
        assert isinstance(data["queue_depth"], int)
        assert data["rejected_requests"] == 0

    async def test_health_gpu_true_when_cuda(self) -> None:
        cuda_app = create_app()
        _init_app_state(cuda_app, FACEGATE_DEVICE="cuda")
        async for ac in _make_client(cuda_app):
            response = await ac.get("/api/v1/health")
            assert response.status_code == status.HTTP_200_OK
            assert response.json()["gpu"] is True

    async def test_health_reports_degraded_cascade(self, tmp_path: Path) -> None:
        cascade_app = create_app()
        _init_app_state(cascade_app, FACEGATE_STRATEGY="cascade", FACEGATE_MODELS_DIR=str(tmp_path))
        await cascade_app.state.model_loader.wait()
        async for ac in _make_client(cascade_app):
            data = (await ac.get("/api/v1/health")).json()
            assert data["pipeline_status"] == "degraded"
            assert data["strategy"] == "cascade"
            assert data["active_strategy"] == "mock"


class TestDetectFacesEndpoint:
    async def test_detects_portrait_face(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/v1/detect-faces",
            files={"file": ("face.png", _png(portrait_image()), "image/png")},
        )
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["detector"] == "heuristic_simple"
        assert data["fallback_used"] is False
        assert (data["image_width"], data["image_height"]) == (480, 640)
        (face,) = data["faces"]
        assert face["confidence"] == pytest.approx(0.8)
        assert face["width"] == pytest.approx(288.0)

    async def test_undecodable_image_returns_400(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/v1/detect-faces",
            files={"file": ("test.jpg", io.BytesIO(b"fake image data"), "image/jpeg")},
        )
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert "decode" in response.json()["detail"].lower()

    async def test_oversized_upload_returns_413(self) -> None:
        small_app = create_app()
        _init_app_state(small_app, FACEGATE_MAX_FILE_SIZE="64")
        async for ac in _make_client(small_app):
            response = await ac.post(
                "/api/v1/detect-faces",
                files={"file": ("face.png", _png(portrait_image()), "image/png")},
            )
            assert response.status_code == 413

    async def test_too_many_pixels_returns_413(self) -> None:
        small_app = create_app()
        _init_app_state(small_app, FACEGATE_MAX_IMAGE_PIXELS="1000")
        async for ac in _make_client(small_app):
            response = await ac.post(
                "/api/v1/detect-faces",
                files={"file": ("face.png", _png(portrait_image()), "image/png")},
            )
            assert response.status_code == 413
            assert "pixel limit" in response.json()["detail"]

    async def test_cascade_only_while_degraded_returns_503(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/v1/detect-faces",
            params={"cascade_only": "true"},
            files={"file": ("face.png", _png(portrait_image()), "image/png")},
        )
        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE


class TestEmbedEndpoint:
    async def test_embed_returns_mock_vector(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/v1/embed",
            files={"file": ("face.png", _png(portrait_image()), "image/png")},
        )
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["dimension"] == 128
        assert len(data["vector"]) == 128
        assert data["source"] == "mock"
        assert data["strategy"] == "mock"
        assert data["spoof_score"] is None

    async def test_no_face_returns_422(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/v1/embed",
            files={"file": ("wide.png", _solid((90, 90, 90), width=640, height=480), "image/png")},
        )
        assert response.status_code == 422
        assert "no face" in response.json()["detail"].lower()


class TestVerifyEndpoint:
    async def test_different_colours_do_not_match(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/v1/verify",
            files={
                "file_a": ("a.png", _solid((255, 0, 0)), "image/png"),
                "file_b": ("b.png", _solid((0, 0, 255)), "image/png"),
            },
        )
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["match"] is False
        assert data["mock"] is True
        assert data["valid"] is True
        assert data["scale"] == "unit_interval"
        assert data["threshold"] == pytest.approx(0.75)
        assert data["similarity"] == pytest.approx(1 / 3, abs=1e-4)
        assert data["mode"] == "mock"
        assert data["status"] == "ready"
        assert data["distance"] > 0

    async def test_same_image_matches(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/v1/verify",
            files={
                "file_a": ("a.png", _png(portrait_image()), "image/png"),
                "file_b": ("b.png", _png(portrait_image()), "image/png"),
            },
        )
        data = response.json()
        assert data["match"] is True
        assert data["confidence"] == pytest.approx(1.0, abs=1e-4)

    async def test_threshold_override(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/v1/verify",
            params={"threshold": "0.2"},
            files={
                "file_a": ("a.png", _solid((255, 0, 0)), "image/png"),
                "file_b": ("b.png", _solid((0, 0, 255)), "image/png"),
            },
        )
        data = response.json()
        assert data["threshold"] == pytest.approx(0.2)
        assert data["match"] is True

    async def test_threshold_out_of_range(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/v1/verify",
            params={"threshold": "1.5"},
            files={
                "file_a": ("a.png", _solid((255, 0, 0)), "image/png"),
                "file_b": ("b.png", _solid((0, 0, 255)), "image/png"),
            },
        )
        assert response.status_code == 422

    async def test_require_models_returns_503_when_degraded(self, tmp_path: Path) -> None:
        cascade_app = create_app()
        _init_app_state(cascade_app, FACEGATE_STRATEGY="cascade", FACEGATE_MODELS_DIR=str(tmp_path))
        async for ac in _make_client(cascade_app):
            response = await ac.post(
                "/api/v1/verify",
                params={"require_models": "true"},
                files={
                    "file_a": ("a.png", _solid((255, 0, 0)), "image/png"),
                    "file_b": ("b.png", _solid((0, 0, 255)), "image/png"),
                },
            )
            assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE

    async def test_server_busy_returns_503(self, client: httpx.AsyncClient) -> None:
        with patch.object(InferencePool, "run", side_effect=TimeoutError):
            response = await client.post(
                "/api/v1/verify",
                files={
                    "file_a": ("a.png", _solid((255, 0, 0)), "image/png"),
                    "file_b": ("b.png", _solid((0, 0, 255)), "image/png"),
                },
            )
        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
        assert "busy" in response.json()["detail"].lower()


class TestModelsEndpoint:
    async def test_models_returns_registry(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/models")
        assert response.status_code == status.HTTP_200_OK
        models = response.json()["models"]
        assert {m["name"] for m in models} == {"pnet", "rnet", "onet", "mobilefacenet", "anti_spoofing"}
        assert all(m["status"] == "not_loaded" for m in models)

    async def test_missing_files_are_reported_as_failed(self, tmp_path: Path) -> None:
        cascade_app = create_app()
        _init_app_state(cascade_app, FACEGATE_STRATEGY="cascade", FACEGATE_MODELS_DIR=str(tmp_path))
        await cascade_app.state.model_loader.wait()
        async for ac in _make_client(cascade_app):
            models = (await ac.get("/api/v1/models")).json()["models"]
            assert all(m["status"] == "failed" for m in models)
            pnet = next(m for m in models if m["name"] == "pnet")
            assert pnet["required"] is True
            assert "pnet.onnx" in pnet["error"]

    async def test_loaded_models(self) -> None:
        loaded_app = create_app()
        _init_app_state(loaded_app, FACEGATE_STRATEGY="cascade")
        manager = FakeModelManager(fake_runtimes())
        loader = ModelLoader(manager)
        loaded_app.state.model_manager = manager
        loaded_app.state.model_loader = loader
        loaded_app.state.pipeline = FacePipeline(loaded_app.state.settings, loader)
        await loader.wait()

        async for ac in _make_client(loaded_app):
            models = {m["name"]: m for m in (await ac.get("/api/v1/models")).json()["models"]}
            assert models["mobilefacenet"]["status"] == "loaded"
            assert models["anti_spoofing"]["status"] == "failed"
            assert models["anti_spoofing"]["required"] is False
            health = (await ac.get("/api/v1/health")).json()
            assert health["pipeline_status"] == "ready"
            assert "onet" in health["models_loaded"]


class TestAuthentication:
    async def test_no_auth_required_by_default(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK

    async def test_auth_required_when_api_key_set(self) -> None:
        app = create_app()
        _init_app_state(app, FACEGATE_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get("/api/v1/health")
            assert response.status_code in (
                status.HTTP_401_UNAUTHORIZED,
                status.HTTP_403_FORBIDDEN,
            )

    async def test_auth_passes_with_correct_key(self) -> None:
        app = create_app()
        _init_app_state(app, FACEGATE_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get(
                "/api/v1/health",
                headers={"Authorization": "Bearer test-secret-key"},
            )
            assert response.status_code == status.HTTP_200_OK

    async def test_auth_fails_with_wrong_key(self) -> None:
        app = create_app()
        _init_app_state(app, FACEGATE_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get(
                "/api/v1/health",
                headers={"Authorization": "Bearer wrong-key"},
            )
            assert response.status_code in (
                status.HTTP_401_UNAUTHORIZED,
                status.HTTP_403_FORBIDDEN,
            )
