"""Player-to-player trading."""

from commons_server.trade.coordinator import Trade, TradeCoordinator, TradeStatus
from commons_server.trade.offers import Offer, apply_exchange, validate_offer

__all__ = ["Offer", "Trade", "TradeCoordinator", "TradeStatus", "apply_exchange", "validate_offer"]
