"""
Data models for item inventory lookups.

An ItemInventory answers "which characters own item X, and how many".
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List


@dataclass
class ItemHolder:
    """One character holding some quantity of an item."""
    holder_name: str
    quantity: int

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "holderName": self.holder_name,
            "quantity": self.quantity,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ItemHolder":
        """Create from dictionary (accepts the dashboard's characterName field)."""
        name = data.get("holderName", data.get("characterName"))
        if not isinstance(name, str):
            raise ValueError(f"Holder entry has no name: {data!r}")
        quantity = data.get("quantity", 0)
        if quantity is None:
            quantity = 0
        if isinstance(quantity, bool) or not isinstance(quantity, (int, float)):
            raise ValueError(f"Holder {name!r} has non-numeric quantity: {quantity!r}")
        return cls(holder_name=name, quantity=int(quantity))


@dataclass
class ItemInventory:
    """
    Holders of a single item, ordered by quantity descending.

    An empty holder list is a successful answer ("nobody owns this"),
    distinct from a failed fetch, which raises instead.
    """
    item_name: str
    holders: List[ItemHolder] = field(default_factory=list)

    def __post_init__(self):
        # Holders with nothing left are noise in the listing
        self.holders = sorted(
            (h for h in self.holders if h.quantity > 0),
            key=lambda h: h.quantity,
            reverse=True,
        )

    @property
    def total_in_world(self) -> int:
        """Total quantity across every holder."""
        return sum(h.quantity for h in self.holders)

    @property
    def is_empty(self) -> bool:
        return not self.holders

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "itemName": self.item_name,
            "holders": [h.to_dict() for h in self.holders],
            "totalInWorld": self.total_in_world,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ItemInventory":
        """Create from dictionary."""
        return cls(
            item_name=data["itemName"],
            holders=[ItemHolder.from_dict(h) for h in data.get("holders", [])],
        )

    @classmethod
    def from_response(cls, item_name: str, payload: Any) -> "ItemInventory":
        """
        Build from the inventory endpoint's response body.

        Raises:
            ValueError: If the body is not a list of holder objects
        """
        if payload is None:
            payload = []
        if not isinstance(payload, list):
            raise ValueError(f"Expected a list of holders, got {type(payload).__name__}")
        holders = []
        for entry in payload:
            if not isinstance(entry, dict):
                raise ValueError(f"Holder entry is not an object: {entry!r}")
            holders.append(ItemHolder.from_dict(entry))
        return cls(item_name=item_name, holders=holders)
