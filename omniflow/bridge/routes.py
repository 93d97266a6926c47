"""
Route Registry

The static table of source/destination pairings, their protocol, base fee
and nominal time. Lookups are exact matches; there is no multi-hop routing.
"""

from collections.abc import Iterable
from decimal import Decimal
from types import MappingProxyType

from ..config import ChainNetwork
from ..models import BridgeProtocol, BridgeRoute

E = ChainNetwork.ETHEREUM
P = ChainNetwork.POLYGON
B = ChainNetwork.BSC
S = ChainNetwork.SOLANA

DEFAULT_ROUTES: tuple[BridgeRoute, ...] = (
    BridgeRoute(source_chain=E, destination_chain=S, protocol=BridgeProtocol.WORMHOLE,
                base_fee=Decimal("0.50"), nominal_time_minutes=12),
    BridgeRoute(source_chain=S, destination_chain=E, protocol=BridgeProtocol.WORMHOLE,
                base_fee=Decimal("15.00"), nominal_time_minutes=8),
    BridgeRoute(source_chain=E, destination_chain=P, protocol=BridgeProtocol.CCTP,
                base_fee=Decimal("12.00"), nominal_time_minutes=5),
    BridgeRoute(source_chain=P, destination_chain=E, protocol=BridgeProtocol.CCTP,
                base_fee=Decimal("0.02"), nominal_time_minutes=7),
    BridgeRoute(source_chain=P, destination_chain=S, protocol=BridgeProtocol.WORMHOLE,
                base_fee=Decimal("0.05"), nominal_time_minutes=3),
    BridgeRoute(source_chain=S, destination_chain=P, protocol=BridgeProtocol.WORMHOLE,
                base_fee=Decimal("0.01"), nominal_time_minutes=5),
    BridgeRoute(source_chain=B, destination_chain=S, protocol=BridgeProtocol.WORMHOLE,
                base_fee=Decimal("0.10"), nominal_time_minutes=4),
    BridgeRoute(source_chain=S, destination_chain=B, protocol=BridgeProtocol.WORMHOLE,
                base_fee=Decimal("0.01"), nominal_time_minutes=6),
    # Native bridges are listed for display only
    BridgeRoute(source_chain=E, destination_chain=B, protocol=BridgeProtocol.NATIVE,
                base_fee=Decimal("18.00"), nominal_time_minutes=15, supported=False),
    BridgeRoute(source_chain=B, destination_chain=E, protocol=BridgeProtocol.NATIVE,
                base_fee=Decimal("0.30"), nominal_time_minutes=15, supported=False),
    BridgeRoute(source_chain=P, destination_chain=B, protocol=BridgeProtocol.NATIVE,
                base_fee=Decimal("0.05"), nominal_time_minutes=10, supported=False),
    BridgeRoute(source_chain=B, destination_chain=P, protocol=BridgeProtocol.NATIVE,
                base_fee=Decimal("0.05"), nominal_time_minutes=10, supported=False),
)


class RouteRegistry:
    """
    Immutable lookup of bridge routes.

    Construction rejects duplicate ordered pairs, routes from a chain to
    itself and pairs listed without their reverse.
    """

    def __init__(self, routes: Iterable[BridgeRoute] = DEFAULT_ROUTES):
        index: dict[tuple[ChainNetwork, ChainNetwork], BridgeRoute] = {}
        for route in routes:
            if route.source_chain == route.destination_chain:
                raise ValueError(f"Route from {route.source_chain.value} to itself")
            if route.key in index:
                raise ValueError(
                    f"Duplicate route {route.source_chain.value} -> "
                    f"{route.destination_chain.value}"
                )
            index[route.key] = route

        for source, destination in index:
            if (destination, source) not in index:
                raise ValueError(
                    f"Route {source.value} -> {destination.value} has no reverse listing"
                )

        self._routes = tuple(index.values())
        self._index = MappingProxyType(index)

    def list_routes(self) -> list[BridgeRoute]:
        return list(self._routes)

    def find_route(
        self,
        source: ChainNetwork,
        destination: ChainNetwork,
    ) -> BridgeRoute | None:
        return self._index.get((source, destination))

    def routes_from(self, source: ChainNetwork) -> list[BridgeRoute]:
        return [r for r in self._routes if r.source_chain == source]

    def __len__(self) -> int:
        return len(self._routes)
