"""Tests for the throttled Discord webhook alerts."""

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from republisher.utils import alerts
from republisher.utils.alerts import send_alert


@pytest.fixture
def mock_webhook_url(monkeypatch):
    """Set DISCORD_WEBHOOK_URL for the test."""
    webhook_url = "https://discord.com/api/webhooks/test/webhook"
    monkeypatch.setenv("DISCORD_WEBHOOK_URL", webhook_url)
    return webhook_url


class TestSendAlert:
    """Test send_alert function."""

    @pytest.mark.asyncio
    async def test_posts_payload(self, mock_webhook_url):
        """Test the webhook receives level, message and detail fields."""
        with patch("httpx.AsyncClient.post", new_callable=AsyncMock) as mock_post:
            mock_post.return_value = MagicMock(status_code=204)

            await send_alert(
                level="WARNING",
                message="Destination credentials unusable",
                details={"user_id": "u-1", "reason": "RefreshError"},
            )

            mock_post.assert_called_once()
            assert mock_post.call_args[0][0] == mock_webhook_url
            payload = mock_post.call_args[1]["json"]
            assert "WARNING" in payload["content"]
            assert payload["embeds"][0]["color"] == 0xFFA500
            assert len(payload["embeds"][0]["fields"]) == 2

    @pytest.mark.asyncio
    async def test_no_webhook_configured_is_noop(self, monkeypatch):
        """Test that alerts are skipped silently without a webhook URL."""
        monkeypatch.delenv("DISCORD_WEBHOOK_URL", raising=False)

        with patch("httpx.AsyncClient.post", new_callable=AsyncMock) as mock_post:
            await send_alert(level="WARNING", message="ignored")

            mock_post.assert_not_called()

    @pytest.mark.asyncio
    async def test_message_truncated(self, mock_webhook_url):
        """Test Discord's 2000 character limit is respected."""
        with patch("httpx.AsyncClient.post", new_callable=AsyncMock) as mock_post:
            mock_post.return_value = MagicMock(status_code=204)

            await send_alert(level="INFO", message="x" * 5000)

            payload = mock_post.call_args[1]["json"]
            assert len(payload["embeds"][0]["description"]) == 2000

    @pytest.mark.asyncio
    async def test_timeout_does_not_raise(self, mock_webhook_url):
        """Test graceful degradation on webhook timeout."""
        with patch(
            "httpx.AsyncClient.post",
            new_callable=AsyncMock,
            side_effect=httpx.TimeoutException("timeout"),
        ):
            await send_alert(level="WARNING", message="still fine")

    @pytest.mark.asyncio
    async def test_throttled_per_key(self, mock_webhook_url):
        """Test a second alert with the same key inside the window is dropped."""
        with patch("httpx.AsyncClient.post", new_callable=AsyncMock) as mock_post:
            mock_post.return_value = MagicMock(status_code=204)

            await send_alert("WARNING", "first", throttle_key="credential:u-1")
            await send_alert("WARNING", "second", throttle_key="credential:u-1")
            await send_alert("WARNING", "other user", throttle_key="credential:u-2")

            assert mock_post.call_count == 2


class TestShouldSendAlert:
    def test_window_expiry(self):
        """Test the key becomes sendable again after the throttle window."""
        assert alerts._should_send_alert("k", now=1000.0) is True
        assert alerts._should_send_alert("k", now=1000.0 + 10) is False
        assert alerts._should_send_alert("k", now=1000.0 + alerts.ALERT_THROTTLE_SECONDS) is True
