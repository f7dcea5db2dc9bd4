"""
Domain records and the pydantic views exchanged with outer layers.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    """Naive UTC timestamp, as stored by the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ============================================================================
# Request lifecycle
# ============================================================================

STATUS_PENDING = "pending"
STATUS_WAITING = "waiting"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_EXPIRED = "expired"

TERMINAL_STATUSES = frozenset({STATUS_COMPLETED, STATUS_FAILED, STATUS_EXPIRED})

# Forward order of the non-terminal path. Terminal states share the top rank.
STATUS_RANK = {
    STATUS_PENDING: 0,
    STATUS_WAITING: 1,
    STATUS_PROCESSING: 2,
    STATUS_COMPLETED: 3,
    STATUS_FAILED: 3,
    STATUS_EXPIRED: 3,
}


def allowed_predecessors(target: str) -> tuple[str, ...]:
    """
    Statuses a request may hold for a move to `target` to be accepted.

    Re-writing the current non-terminal status is allowed (last write wins);
    terminal states are absorbing.
    """
    if target in TERMINAL_STATUSES:
        return (STATUS_PENDING, STATUS_WAITING, STATUS_PROCESSING)
    rank = STATUS_RANK[target]
    return tuple(
        s for s, r in STATUS_RANK.items() if r <= rank and s not in TERMINAL_STATUSES
    )


class PaymentClassification(str, Enum):
    """What the chain shows for a deposit address against the expected amount."""

    PENDING = "pending"
    UNCONFIRMED = "unconfirmed"
    CONFIRMED = "confirmed"


# ============================================================================
# Records
# ============================================================================


@dataclass
class OutputAddress:
    """Destination address with its percentage of the output."""

    address: str
    percentage: Decimal


@dataclass
class ExchangeRequest:
    """One user-initiated exchange."""

    id: str
    btc_amount: Decimal
    output_currency: str
    output_addresses: list[OutputAddress]
    payment_address: str
    fee: Decimal
    estimated_output: Decimal
    status: str
    created_at: datetime
    updated_at: datetime
    final_output: Optional[Decimal] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_view(self) -> "ExchangeRequestView":
        return ExchangeRequestView(
            id=self.id,
            payment_address=self.payment_address,
            btc_amount=self.btc_amount,
            output_currency=self.output_currency,
            output_addresses=[
                OutputAddressInput(address=o.address, percentage=o.percentage)
                for o in self.output_addresses
            ],
            estimated_output=self.estimated_output,
            final_output=self.final_output,
            fee=self.fee,
            status=self.status,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


@dataclass
class DepositKey:
    """Encrypted key material backing one deposit address."""

    address: str
    encrypted_private_key: str
    created_at: datetime
    request_id: Optional[str] = None
    is_active: bool = True

    def __repr__(self) -> str:
        return (
            f"DepositKey(address={self.address!r}, request_id={self.request_id!r}, "
            f"is_active={self.is_active})"
        )


@dataclass
class PaymentRecord:
    """An observed on-chain payment matched to a request."""

    id: str
    request_id: str
    address: str
    amount_sats: int
    confirmations: int
    status: str  # "unconfirmed", "confirmed"
    detected_at: datetime
    txid: Optional[str] = None


@dataclass
class PriceSnapshot:
    """Last known USD price for one symbol."""

    symbol: str
    price_usd: Decimal
    last_updated: datetime


@dataclass
class SettlementJob:
    """Durable polling job for one in-flight request."""

    request_id: str
    next_poll_at: datetime
    deadline: datetime
    attempts: int = 0
    last_error: Optional[str] = None


@dataclass
class PaymentCheck:
    """Result of classifying a deposit address against an expected amount."""

    address: str
    expected_sats: int
    confirmed_sats: int
    unconfirmed_sats: int
    total_received_sats: int
    classification: PaymentClassification
    confirmations: int = 0
    txid: Optional[str] = None
    checked_at: datetime = field(default_factory=utcnow)

    def to_status(self) -> "PaymentStatus":
        return PaymentStatus(
            address=self.address,
            expected_amount=self.expected_sats,
            total_received=self.total_received_sats,
            confirmed_balance=self.confirmed_sats,
            unconfirmed_balance=self.unconfirmed_sats,
            status=self.classification.value,
            confirmations=self.confirmations,
            payment_txid=self.txid,
        )


# ============================================================================
# Inbound
# ============================================================================


class OutputAddressInput(BaseModel):
    """Destination address and its share of the output."""

    address: str = Field(..., description="Destination address for the output asset")
    percentage: Decimal = Field(..., description="Share of the output, in percent")


class CreateExchangeInput(BaseModel):
    """Request to create an exchange."""

    btc_amount: Decimal = Field(..., description="BTC the user will deposit (8 decimals max)")
    output_currency: str = Field(..., description="Symbol of the asset to pay out")
    output_addresses: list[OutputAddressInput] = Field(
        ..., description="1-7 destination addresses with percentages summing to 100"
    )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "btc_amount": "0.01",
                    "output_currency": "ETH",
                    "output_addresses": [
                        {"address": "0x1234567890abcdef1234567890abcdef12345678", "percentage": "100"}
                    ],
                }
            ]
        }
    }


# ============================================================================
# Outbound
# ============================================================================


class ExchangeRequestView(BaseModel):
    """Public view of an exchange request."""

    id: str
    payment_address: str
    btc_amount: Decimal
    output_currency: str
    output_addresses: list[OutputAddressInput]
    estimated_output: Decimal
    final_output: Optional[Decimal] = None
    fee: Decimal
    status: str
    created_at: datetime
    updated_at: datetime


class PaymentStatus(BaseModel):
    """Public view of a deposit address's payment state."""

    address: str = Field(..., description="Deposit address")
    expected_amount: int = Field(..., description="Expected amount in satoshis")
    total_received: int = Field(..., description="Total funded to the address in satoshis")
    confirmed_balance: int = Field(..., description="Confirmed balance in satoshis")
    unconfirmed_balance: int = Field(..., description="Mempool balance delta in satoshis")
    status: str = Field(..., description="pending, unconfirmed or confirmed")
    confirmations: int = Field(0, description="Confirmations of the matched transaction")
    payment_txid: Optional[str] = Field(None, description="Matched transaction id, if any")


class CurrencyView(BaseModel):
    """Supported output asset."""

    symbol: str
    name: str
    min_amount: Decimal
    max_amount: Decimal
    fee_rate: Decimal
