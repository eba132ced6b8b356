"""Tests for the CoinGecko spot price client."""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import MagicMock

import pytest
import requests

from conftest import TOKEN
from models import Asset
from oracle import CoinGeckoOracle


def _response(payload):
    resp = MagicMock()
    resp.json.return_value = payload
    resp.raise_for_status.return_value = None
    return resp


@pytest.fixture
def session():
    mock = MagicMock()
    mock.get.return_value = _response({"ethereum": {"usd": 2000.5}})
    return mock


class TestSpotPrice:
    def test_native_price(self, session):
        oracle = CoinGeckoOracle(api_key="demo-key", session=session)
        assert oracle.spot_price() == Decimal("2000.5")

        url = session.get.call_args[0][0]
        kwargs = session.get.call_args[1]
        assert url == "https://api.coingecko.com/api/v3/simple/price"
        assert kwargs["params"] == {"ids": "ethereum", "vs_currencies": "usd"}
        assert kwargs["headers"]["x-cg-demo-api-key"] == "demo-key"

    def test_no_key_header_without_api_key(self, session):
        CoinGeckoOracle(session=session).spot_price()
        assert "x-cg-demo-api-key" not in session.get.call_args[1]["headers"]

    def test_price_is_cached(self, session):
        oracle = CoinGeckoOracle(session=session)
        oracle.spot_price(Asset.native())
        oracle.spot_price(Asset.native())
        assert session.get.call_count == 1

    def test_cache_can_be_disabled(self, session):
        oracle = CoinGeckoOracle(session=session, cache_seconds=0)
        oracle.spot_price()
        oracle.spot_price()
        assert session.get.call_count == 2

    def test_token_price(self, session):
        session.get.return_value = _response({TOKEN.lower(): {"usd": 0.9998}})
        oracle = CoinGeckoOracle(session=session)
        assert oracle.spot_price(Asset.token("USDC", TOKEN, 6)) == Decimal("0.9998")
        assert session.get.call_args[0][0].endswith("/simple/token_price/ethereum")


class TestUnavailable:
    """A missing price is None, never zero."""

    def test_request_error(self, session):
        session.get.side_effect = requests.ConnectionError("offline")
        assert CoinGeckoOracle(session=session).spot_price() is None

    def test_http_error(self, session):
        resp = _response({})
        resp.raise_for_status.side_effect = requests.HTTPError("429 Too Many Requests")
        session.get.return_value = resp
        assert CoinGeckoOracle(session=session).spot_price() is None

    @pytest.mark.parametrize("payload", [{}, {"ethereum": {}}, {"ethereum": {"usd": 0}}, ["bad"]])
    def test_unusable_payload(self, session, payload):
        session.get.return_value = _response(payload)
        assert CoinGeckoOracle(session=session).spot_price() is None

    def test_failures_are_not_cached(self, session):
        session.get.return_value = _response({})
        oracle = CoinGeckoOracle(session=session)
        assert oracle.spot_price() is None
        session.get.return_value = _response({"ethereum": {"usd": 1800}})
        assert oracle.spot_price() == Decimal("1800")
