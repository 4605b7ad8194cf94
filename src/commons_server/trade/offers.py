"""Trade offers: what one side commits to give, and whether they can.

An :class:`Offer` lists item ids (duplicates mean quantity) and an amount of
pennies. :func:`validate_offer` checks an offer against a player's current
record and returns the first problem as a user-facing message.
:func:`apply_exchange` computes both post-trade records without touching the
originals, so the coordinator can persist them or throw them away.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field

from commons_server.players.store import Player

INVALID_CURRENCY = "Invalid currency amount"
INSUFFICIENT_CURRENCY = "Insufficient currency"


@dataclass(frozen=True, slots=True)
class Offer:
    items: tuple[str, ...] = field(default_factory=tuple)
    currency: int = 0

    @classmethod
    def empty(cls) -> Offer:
        return cls()

    @classmethod
    def from_dict(cls, data: dict | None) -> Offer:
        if not data:
            return cls()
        return cls(items=tuple(data.get("items", ())), currency=data.get("currency", 0))

    def to_dict(self) -> dict:
        return {"items": list(self.items), "currency": self.currency}

    def is_empty(self) -> bool:
        return not self.items and self.currency == 0


def validate_offer(player: Player, offer: Offer) -> str | None:
    """
    Check that ``player`` can give everything in ``offer``.

    Args:
        player: The player's current record.
        offer: What they propose to give.

    Returns:
        ``None`` when the offer is covered, otherwise the first failure:
        ``"Invalid currency amount"``, ``"Insufficient currency"``,
        ``"Item {id} not in inventory"`` or
        ``"Insufficient quantity of item {id}"``.
    """
    currency = offer.currency
    if isinstance(currency, bool) or not isinstance(currency, int) or currency < 0:
        return INVALID_CURRENCY
    if currency > player.pennies:
        return INSUFFICIENT_CURRENCY

    have = player.item_counts()
    need = Counter(offer.items)
    for item_id in dict.fromkeys(offer.items):
        if have[item_id] == 0:
            return f"Item {item_id} not in inventory"
        if need[item_id] > have[item_id]:
            return f"Insufficient quantity of item {item_id}"
    return None


def _remove_items(inventory: list[str], items: tuple[str, ...]) -> None:
    for item_id in items:
        inventory.remove(item_id)


def apply_exchange(
    giver_a: Player, offer_a: Offer, giver_b: Player, offer_b: Offer
) -> tuple[Player, Player]:
    """
    Return copies of both players after ``a`` gives ``offer_a`` to ``b`` and
    ``b`` gives ``offer_b`` to ``a``.

    Both offers must already have passed :func:`validate_offer`; a missing
    item raises ``ValueError`` from ``list.remove``.
    """
    new_a = giver_a.copy()
    new_b = giver_b.copy()

    _remove_items(new_a.inventory, offer_a.items)
    _remove_items(new_b.inventory, offer_b.items)
    new_a.inventory.extend(offer_b.items)
    new_b.inventory.extend(offer_a.items)

    new_a.pennies += offer_b.currency - offer_a.currency
    new_b.pennies += offer_a.currency - offer_b.currency
    return new_a, new_b
