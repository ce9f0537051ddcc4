"""
Unit Tests for Metrics Abstraction Layer

Covers the MetricsClient implementations (Telegraf, NoOp) and backend selection through
create_metrics_client.
"""

import pytest
from unittest.mock import Mock, patch, AsyncMock

from ga_dashboard.app.metrics import (
    MetricsClient,
    TelegrafCompatibilityClient,
    NoOpMetricsClient,
    create_metrics_client,
)


class TestMetricsClientInterface:
    def test_interface_is_abstract(self):
        """MetricsClient should be abstract and not instantiable."""
        with pytest.raises(TypeError):
            MetricsClient()


class TestNoOpMetricsClient:
    @pytest.fixture
    def noop_client(self):
        return NoOpMetricsClient()

    def test_noop_increment(self, noop_client):
        noop_client.increment("test.counter", 1, {"tag": "value"})
        noop_client.increment("test.counter", 5)
        noop_client.increment("test.counter")

    def test_noop_gauge(self, noop_client):
        noop_client.gauge("test.gauge", 42.5, {"tag": "value"})
        noop_client.gauge("test.gauge", 0)

    def test_noop_timer(self, noop_client):
        noop_client.timer("test.timer", 1.234, {"tag": "value"})

    async def test_noop_connect_and_close(self, noop_client):
        await noop_client.connect()
        await noop_client.close()


class TestTelegrafCompatibilityClient:
    @pytest.fixture
    def mock_telegraf_client(self):
        mock = Mock()
        mock.connect = AsyncMock()
        mock.close = AsyncMock()
        return mock

    @pytest.fixture
    def telegraf_client(self, mock_telegraf_client):
        return TelegrafCompatibilityClient(mock_telegraf_client)

    def test_telegraf_increment(self, telegraf_client, mock_telegraf_client):
        """Telegraf increment should delegate to underlying client."""
        telegraf_client.increment("test.counter", 3, {"method": "POST"})

        mock_telegraf_client.increment.assert_called_once_with(
            "test.counter", 3, tag_dict={"method": "POST"}
        )

    def test_telegraf_gauge(self, telegraf_client, mock_telegraf_client):
        telegraf_client.gauge("test.gauge", 42.0, {"status": "ok"})

        mock_telegraf_client.gauge.assert_called_once_with(
            "test.gauge", 42.0, tag_dict={"status": "ok"}
        )

    def test_telegraf_timer(self, telegraf_client, mock_telegraf_client):
        telegraf_client.timer("test.timer", 1.234, {"endpoint": "/api"})

        mock_telegraf_client.timer.assert_called_once_with(
            "test.timer", 1.234, tag_dict={"endpoint": "/api"}
        )

    def test_telegraf_increment_no_tags(self, telegraf_client, mock_telegraf_client):
        telegraf_client.increment("test.counter")

        mock_telegraf_client.increment.assert_called_once_with(
            "test.counter", 1, tag_dict={}
        )

    async def test_telegraf_connect(self, telegraf_client, mock_telegraf_client):
        await telegraf_client.connect()

        mock_telegraf_client.connect.assert_awaited_once()

    async def test_telegraf_close(self, telegraf_client, mock_telegraf_client):
        await telegraf_client.close()

        mock_telegraf_client.close.assert_awaited_once()

    async def test_telegraf_close_error_is_logged(
        self, telegraf_client, mock_telegraf_client
    ):
        """Closing never raises, even when the transport is already gone."""
        mock_telegraf_client.close.side_effect = RuntimeError("transport closed")

        await telegraf_client.close()


class TestMetricsClientFactory:
    def test_factory_creates_noop_client(self):
        client = create_metrics_client("none")
        assert isinstance(client, NoOpMetricsClient)

    @patch("ga_dashboard.app.metrics.TelegrafStatsdClient")
    def test_factory_creates_telegraf_client(self, mock_telegraf_class):
        mock_instance = Mock()
        mock_telegraf_class.return_value = mock_instance

        client = create_metrics_client(
            "telegraf", host="localhost", port=8125, debug=True
        )

        assert isinstance(client, TelegrafCompatibilityClient)
        assert client.client is mock_instance
        mock_telegraf_class.assert_called_once_with(
            host="localhost", port=8125, debug=True
        )

    def test_factory_handles_invalid_backend(self):
        with pytest.raises(ValueError, match="Invalid metrics backend: invalid"):
            create_metrics_client("invalid")

    def test_factory_handles_case_insensitive_backends(self):
        clients = [create_metrics_client(name) for name in ("NONE", "None", "none")]

        assert all(isinstance(c, NoOpMetricsClient) for c in clients)
