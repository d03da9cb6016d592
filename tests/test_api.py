"""Tests for the NutriScan HTTP API."""

from __future__ import annotations

import io
import os
from typing import TYPE_CHECKING
from unittest.mock import MagicMock, patch

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

import httpx
import numpy as np
import pytest
from fastapi import FastAPI, status
from PIL import Image

from nutriscan.config import get_settings
from nutriscan.errors import ModelUnavailableError
from nutriscan.main import create_app, lifespan
from nutriscan.ml.image_classifier import ModelTier
from nutriscan.ml.inference import InferencePool
from nutriscan.ml.manifest import parse_manifest
from nutriscan.ml.model_manager import LoadedModel
from nutriscan.ml.pipeline import ClassificationContext

_MANIFEST = {
    "classes": ["pizza", "sushi", "french_fries"],
    "calories": {"pizza": 300, "french_fries": 365},
    "nutrition": {"french_fries": {"calories": 365, "protein": 4, "carbs": 48, "fat": 17}},
}


class _StubProvider:
    def __init__(self, output: list[float], *, fail: bool = False) -> None:
        self._output = np.array([output], dtype=np.float32)
        self._fail = fail

    @property
    def model_name(self) -> str:
        return "stub"

    @property
    def expects_normalized_input(self) -> bool:
        return True

    def predict(self, tensor: np.ndarray) -> np.ndarray:
        if self._fail:
            raise RuntimeError("session exploded")
        return self._output


def _image_bytes() -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (32, 32), (200, 120, 40)).save(buffer, format="PNG")
    return buffer.getvalue()


def _init_app_state(
    app: FastAPI,
    provider: _StubProvider | None = None,
    tier: ModelTier = ModelTier.CUSTOM,
    manifest: object = _MANIFEST,
    **env_overrides: str,
) -> None:
    """Manually initialize app state (ASGITransport does not trigger lifespan)."""
    with patch.dict(os.environ, env_overrides):
        settings = get_settings()
    app.state.settings = settings
    app.state.inference_pool = InferencePool()
    manager = MagicMock()
    manager.get_loaded_models.return_value = ["food101_mobilenetv2"] if provider is not None else []
    app.state.model_manager = manager
    app.state.context = (
        ClassificationContext(
            provider=provider,
            manifest=parse_manifest(manifest),
            tier=tier,
            input_size=(16, 16),
            top_k=settings.top_k,
            max_image_pixels=settings.max_image_pixels,
        )
        if provider is not None
        else None
    )


async def _make_client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://testserver",
    ) as ac:
        yield ac
    pool: InferencePool = app.state.inference_pool
    pool.shutdown()


async def _post_image(client: httpx.AsyncClient, data: bytes | None = None) -> httpx.Response:
    return await client.post(
        "/api/v1/classify-image",
        files={"file": ("meal.png", io.BytesIO(data if data is not None else _image_bytes()), "image/png")},
    )


@pytest.fixture()
def app() -> FastAPI:
    """Create a fresh app instance serving the custom tier."""
    application = create_app()
    _init_app_state(application, _StubProvider([0.1, 0.2, 0.7]))
    return application


@pytest.fixture()
async def client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    """Async HTTP client for testing the app."""
    async for ac in _make_client(app):
        yield ac


class TestClassifyImageEndpoint:
    async def test_returns_exact_nutrition(self, client: httpx.AsyncClient) -> None:
        response = await _post_image(client)
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["label"] == "french_fries"
        assert data["display_name"] == "French Fries"
        assert data["confidence"] == 70.0
        assert data["calories"] == 365
        assert (data["protein_g"], data["carbs_g"], data["fat_g"]) == (4.0, 48.0, 17.0)
        assert data["nutrition_source"] == "exact"
        assert data["tier"] == "custom"
        assert data["is_custom_model"] is True
        assert data["labels_degraded"] is False
        assert [item["label"] for item in data["top_k"]] == ["french_fries", "sushi", "pizza"]
        assert data["top_k"][1]["confidence"] == 20.0

    async def test_unknown_dish_is_estimated(self) -> None:
        app = create_app()
        _init_app_state(
            app,
            _StubProvider([0.2, 0.8]),
            manifest={"classes": ["pizza", "sushi"], "calories": {"pizza": 300}},
        )
        async for ac in _make_client(app):
            data = (await _post_image(ac)).json()
            assert data["label"] == "sushi"
            assert data["confidence"] == 80.0
            assert data["nutrition_source"] == "estimated"
            assert 200 <= data["calories"] < 600

    async def test_fallback_tier_reported(self) -> None:
        app = create_app()
        _init_app_state(
            app,
            _StubProvider([0.9, 0.1]),
            tier=ModelTier.FALLBACK,
            manifest={"classes": ["pizza, pizza pie", "espresso"], "calories": {"pizza": 300}},
        )
        async for ac in _make_client(app):
            data = (await _post_image(ac)).json()
            assert data["tier"] == "fallback"
            assert data["is_custom_model"] is False
            assert data["label"] == "pizza"
            assert data["calories"] == 300
            assert data["top_k"][0]["label"] == "pizza"

    async def test_mismatched_manifest_synthesizes_labels(self) -> None:
        app = create_app()
        _init_app_state(app, _StubProvider([0.05, 0.05, 0.1, 0.2, 0.6]))
        async for ac in _make_client(app):
            response = await _post_image(ac)
            assert response.status_code == status.HTTP_200_OK
            data = response.json()
            assert data["label"] == "Class 4"
            assert data["labels_degraded"] is True

    async def test_undecodable_image_returns_422(self, client: httpx.AsyncClient) -> None:
        response = await _post_image(client, b"fake image data")
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
        assert "decode" in response.json()["detail"].lower()

    async def test_oversized_upload_returns_413(self) -> None:
        app = create_app()
        _init_app_state(app, _StubProvider([1.0, 0.0, 0.0]), NUTRISCAN_MAX_FILE_SIZE="16")
        async for ac in _make_client(app):
            response = await _post_image(ac)
            assert response.status_code == status.HTTP_413_REQUEST_ENTITY_TOO_LARGE

    async def test_inference_failure_returns_500_and_recovers(self) -> None:
        app = create_app()
        _init_app_state(app, _StubProvider([1.0, 0.0, 0.0], fail=True))
        async for ac in _make_client(app):
            response = await _post_image(ac)
            assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
            health = await ac.get("/api/v1/health")
            assert health.json()["status"] == "ok"

    async def test_offline_returns_503(self) -> None:
        app = create_app()
        _init_app_state(app, provider=None)
        async for ac in _make_client(app):
            response = await _post_image(ac)
            assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE


class TestHealthEndpoint:
    async def test_health_returns_ok(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "ok"
        assert data["tier"] == "custom"
        assert data["gpu"] is False
        assert data["models_loaded"] == ["food101_mobilenetv2"]
        assert isinstance(data["concurrent_requests"], int)
        assert isinstance(data["queue_depth"], int)

    async def test_health_offline_when_no_model(self) -> None:
        app = create_app()
        _init_app_state(app, provider=None)
        async for ac in _make_client(app):
            data = (await ac.get("/api/v1/health")).json()
            assert data["status"] == "offline"
            assert data["tier"] is None

    async def test_health_gpu_true_when_cuda(self) -> None:
        cuda_app = create_app()
        _init_app_state(cuda_app, _StubProvider([1.0]), NUTRISCAN_DEVICE="cuda")
        async for ac in _make_client(cuda_app):
            response = await ac.get("/api/v1/health")
            assert response.status_code == status.HTTP_200_OK
            assert response.json()["gpu"] is True


class TestModelsEndpoint:
    async def test_custom_tier_active(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/models")
        assert response.status_code == status.HTTP_200_OK
        models = {m["tier"]: m for m in response.json()["models"]}
        assert models["custom"]["status"] == "active"
        assert models["fallback"]["status"] == "available"
        assert models["custom"]["revision"] == "v1"

    async def test_fallback_tier_active(self) -> None:
        app = create_app()
        _init_app_state(app, _StubProvider([1.0]), tier=ModelTier.FALLBACK)
        async for ac in _make_client(app):
            models = {m["tier"]: m for m in (await ac.get("/api/v1/models")).json()["models"]}
            assert models["fallback"]["status"] == "active"
            assert models["custom"]["status"] == "available"

    async def test_all_unavailable_when_offline(self) -> None:
        app = create_app()
        _init_app_state(app, provider=None)
        async for ac in _make_client(app):
            models = (await ac.get("/api/v1/models")).json()["models"]
            assert {m["status"] for m in models} == {"unavailable"}


class TestAuthentication:
    async def test_no_auth_required_by_default(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK

    async def test_auth_required_when_api_key_set(self) -> None:
        app = create_app()
        _init_app_state(app, _StubProvider([1.0]), NUTRISCAN_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get("/api/v1/health")
            assert response.status_code in (
                status.HTTP_401_UNAUTHORIZED,
                status.HTTP_403_FORBIDDEN,
            )

    async def test_auth_passes_with_correct_key(self) -> None:
        app = create_app()
        _init_app_state(app, _StubProvider([1.0]), NUTRISCAN_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get(
                "/api/v1/health",
                headers={"Authorization": "Bearer test-secret-key"},
            )
            assert response.status_code == status.HTTP_200_OK

    async def test_auth_fails_with_wrong_key(self) -> None:
        app = create_app()
        _init_app_state(app, _StubProvider([1.0]), NUTRISCAN_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get(
                "/api/v1/health",
                headers={"Authorization": "Bearer wrong-key"},
            )
            assert response.status_code in (
                status.HTTP_401_UNAUTHORIZED,
                status.HTTP_403_FORBIDDEN,
            )


class TestLifespan:
    async def test_lifespan_loads_model_once(self) -> None:
        app = FastAPI()
        loaded = LoadedModel(
            provider=_StubProvider([1.0]),
            manifest=parse_manifest(["pizza"]),
            tier=ModelTier.FALLBACK,
        )
        with patch("nutriscan.main.OnnxModelManager") as mock_manager_cls:
            mock_manager_cls.return_value.load_model.return_value = loaded
            async with lifespan(app):
                assert app.state.context is not None
                assert app.state.context.tier is ModelTier.FALLBACK
            mock_manager_cls.return_value.load_model.assert_called_once()
            mock_manager_cls.return_value.shutdown.assert_called_once()

    async def test_lifespan_goes_offline_when_no_model(self) -> None:
        app = FastAPI()
        with patch("nutriscan.main.OnnxModelManager") as mock_manager_cls:
            mock_manager_cls.return_value.load_model.side_effect = ModelUnavailableError("both tiers failed")
            async with lifespan(app):
                assert app.state.context is None
