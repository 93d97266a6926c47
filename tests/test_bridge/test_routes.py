"""
Tests for the Route Registry.
"""

from decimal import Decimal

import pytest

from omniflow.bridge.routes import DEFAULT_ROUTES, RouteRegistry
from omniflow.config import ChainNetwork
from omniflow.models import BridgeProtocol, BridgeRoute

E = ChainNetwork.ETHEREUM
P = ChainNetwork.POLYGON
B = ChainNetwork.BSC
S = ChainNetwork.SOLANA


def _route(source, destination, **kwargs):
    defaults = {
        "protocol": BridgeProtocol.WORMHOLE,
        "base_fee": Decimal("1"),
        "nominal_time_minutes": 5,
    }
    return BridgeRoute(source_chain=source, destination_chain=destination, **{**defaults, **kwargs})


# ==================== Default Table Tests ====================


class TestDefaultRoutes:
    """Tests for the default route table."""

    def test_twelve_routes(self, registry):
        """Test every ordered pair of distinct chains is listed."""
        assert len(registry) == 12
        pairs = {r.key for r in registry.list_routes()}
        expected = {(a, b) for a in ChainNetwork for b in ChainNetwork if a != b}
        assert pairs == expected

    def test_ethereum_to_solana(self, registry):
        """Test the Ethereum to Solana route details."""
        route = registry.find_route(E, S)

        assert route is not None
        assert route.protocol == BridgeProtocol.WORMHOLE
        assert route.base_fee == Decimal("0.50")
        assert route.nominal_time_minutes == 12
        assert route.supported is True

    def test_cctp_routes(self, registry):
        """Test Ethereum and Polygon use CCTP both ways."""
        assert registry.find_route(E, P).protocol == BridgeProtocol.CCTP
        assert registry.find_route(P, E).protocol == BridgeProtocol.CCTP

    def test_native_routes_unsupported(self, registry):
        """Test native bridge routes are listed but not supported."""
        native = [r for r in registry.list_routes() if r.protocol == BridgeProtocol.NATIVE]

        assert len(native) == 4
        assert all(not r.supported for r in native)

    def test_route_fees_non_negative(self):
        """Test no default route carries a negative fee or zero time."""
        for route in DEFAULT_ROUTES:
            assert route.base_fee >= 0
            assert route.nominal_time_minutes > 0

    def test_unknown_pair(self, registry):
        """Test lookup of a self pair returns None."""
        assert registry.find_route(E, E) is None

    def test_routes_from(self, registry):
        """Test listing routes leaving one chain."""
        routes = registry.routes_from(S)

        assert {r.destination_chain for r in routes} == {E, P, B}

    def test_list_routes_returns_copy(self, registry):
        """Test callers cannot mutate the registry through the list."""
        routes = registry.list_routes()
        routes.clear()
        assert len(registry.list_routes()) == 12


# ==================== Validation Tests ====================


class TestRegistryValidation:
    """Tests for registry construction rules."""

    def test_self_route_rejected(self):
        """Test a route from a chain to itself is rejected."""
        with pytest.raises(ValueError, match="itself"):
            RouteRegistry([_route(E, E)])

    def test_duplicate_rejected(self):
        """Test duplicate ordered pairs are rejected."""
        with pytest.raises(ValueError, match="Duplicate"):
            RouteRegistry([_route(E, S), _route(S, E), _route(E, S)])

    def test_missing_reverse_rejected(self):
        """Test a pair listed without its reverse is rejected."""
        with pytest.raises(ValueError, match="reverse"):
            RouteRegistry([_route(E, S)])

    def test_custom_table(self):
        """Test a symmetric custom table is accepted."""
        registry = RouteRegistry([_route(E, S), _route(S, E, base_fee=Decimal("2"))])

        assert len(registry) == 2
        assert registry.find_route(S, E).base_fee == Decimal("2")
        assert registry.find_route(E, P) is None

    def test_negative_fee_rejected(self):
        """Test BridgeRoute validates the fee."""
        with pytest.raises(ValueError):
            _route(E, S, base_fee=Decimal("-1"))
