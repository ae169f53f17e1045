"""
Tests for HttpImageProcessor — single attempt, outcome mapping.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from photoledger.models.workflow import PopFigureConfig, ProcessingMode, UpscaleConfig
from photoledger.services.image_processor import HttpImageProcessor


@pytest.fixture
def processor():
    return HttpImageProcessor(base_url="https://process.test/", api_key="proc_key", timeout=5.0)


def _mock_http(MockClient, status_code=200, json_data=None, side_effect=None):
    mock_resp = MagicMock()
    mock_resp.status_code = status_code
    mock_resp.json.return_value = json_data

    mock_instance = AsyncMock()
    if side_effect is not None:
        mock_instance.post = AsyncMock(side_effect=side_effect)
    else:
        mock_instance.post = AsyncMock(return_value=mock_resp)
    mock_instance.__aenter__ = AsyncMock(return_value=mock_instance)
    mock_instance.__aexit__ = AsyncMock(return_value=False)
    MockClient.return_value = mock_instance
    return mock_instance


class TestHttpImageProcessor:
    @pytest.mark.asyncio
    async def test_success(self, processor):
        with patch("httpx.AsyncClient") as MockClient:
            mock_instance = _mock_http(MockClient, 200, {"success": True, "output_uri": "https://cdn/out.png"})
            outcome = await processor.process("https://cdn/in.png", ProcessingMode.UPSCALE, UpscaleConfig(outscale=2))

        assert outcome.success is True
        assert outcome.output_uri == "https://cdn/out.png"
        args, kwargs = mock_instance.post.call_args
        assert args[0] == "https://process.test/api/v1/process"
        assert kwargs["json"] == {
            "input_uri": "https://cdn/in.png",
            "mode": "upscale",
            "params": {"outscale": 2, "face_enhance": False},
        }
        assert kwargs["headers"]["Authorization"] == "Bearer proc_key"

    @pytest.mark.asyncio
    async def test_model_failure(self, processor):
        with patch("httpx.AsyncClient") as MockClient:
            _mock_http(MockClient, 200, {"success": False, "error": "no face detected"})
            outcome = await processor.process("in", ProcessingMode.POP_FIGURE, PopFigureConfig())

        assert outcome.success is False
        assert outcome.error == "no face detected"

    @pytest.mark.asyncio
    async def test_http_error_status(self, processor):
        with patch("httpx.AsyncClient") as MockClient:
            _mock_http(MockClient, 502, {"detail": "upstream model crashed"})
            outcome = await processor.process("in", ProcessingMode.POP_FIGURE, PopFigureConfig())

        assert outcome.success is False
        assert outcome.status_code == 502
        assert outcome.error == "upstream model crashed"

    @pytest.mark.asyncio
    async def test_network_error_single_attempt(self, processor):
        with patch("httpx.AsyncClient") as MockClient:
            mock_instance = _mock_http(MockClient, side_effect=httpx.ConnectError("refused"))
            outcome = await processor.process("in", ProcessingMode.POP_FIGURE, PopFigureConfig())

        assert outcome.success is False
        assert outcome.status_code == 0
        assert mock_instance.post.await_count == 1

    @pytest.mark.asyncio
    async def test_timeout(self, processor):
        with patch("httpx.AsyncClient") as MockClient:
            _mock_http(MockClient, side_effect=httpx.ReadTimeout("slow"))
            outcome = await processor.process("in", ProcessingMode.POP_FIGURE, PopFigureConfig())

        assert outcome.success is False
        assert outcome.error == "timeout"
