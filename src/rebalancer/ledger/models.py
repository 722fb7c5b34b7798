"""Ledger record models."""

import uuid
from typing import Optional

from pydantic import BaseModel, field_serializer


def route_prefix(destination: int, origin: int, asset: str) -> str:
    return f"{destination}-{origin}-{asset.lower()}"


class TransferRecord(BaseModel):
    """A submitted transfer that has not yet settled on its destination."""

    id: str
    bridge: str
    amount: int
    origin: int
    destination: int
    asset: str
    transaction: str
    recipient: Optional[str] = None

    @field_serializer("amount")
    def _amount_as_string(self, amount: int) -> str:
        return str(amount)

    @classmethod
    def create(
        cls,
        bridge: str,
        amount: int,
        origin: int,
        destination: int,
        asset: str,
        transaction: str,
        recipient: Optional[str] = None,
    ) -> "TransferRecord":
        """Build a record with a fresh id (route prefix plus random suffix)."""
        return cls(
            id=f"{route_prefix(destination, origin, asset)}-{uuid.uuid4()}",
            bridge=bridge,
            amount=amount,
            origin=origin,
            destination=destination,
            asset=asset,
            transaction=transaction,
            recipient=recipient,
        )

    @property
    def route_key(self) -> str:
        return route_prefix(self.destination, self.origin, self.asset)

    def __repr__(self) -> str:
        return f"<TransferRecord {self.id} {self.bridge} {self.amount} tx={self.transaction}>"
