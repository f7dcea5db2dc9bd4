"""
Exchange request validation, quoting and persistence.
"""

import asyncio
import uuid
from decimal import Decimal
from typing import Protocol

import structlog

from .address import MAINNET, validate_address
from .amounts import has_at_most_eight_places, quantize_amount
from .currencies import BTC, SUPPORTED_CURRENCIES, calculate_fee, fee_rate_for, is_supported
from .db import ExchangeDatabase
from .errors import PersistenceError, ValidationError
from .models import (
    STATUS_PENDING,
    CreateExchangeInput,
    CurrencyView,
    ExchangeRequest,
    OutputAddress,
    SettlementJob,
    utcnow,
)
from .prices import PriceOracle
from .vault import AddressKeyVault

logger = structlog.get_logger()

PERCENT_TOTAL = Decimal("100")


class SettlementScheduler(Protocol):
    """Builds the durable job that drives a new request to settlement."""

    def new_job(self, request_id: str) -> SettlementJob: ...


class ExchangeLedger:
    """
    Creates and reads exchange requests.

    Creation validates everything before touching the vault or the store,
    so a rejected request leaves no deposit key and no row behind.
    """

    def __init__(
        self,
        store: ExchangeDatabase,
        vault: AddressKeyVault,
        oracle: PriceOracle,
        scheduler: SettlementScheduler,
        network: str = MAINNET,
        percentage_tolerance: Decimal = Decimal("0.1"),
        max_output_addresses: int = 7,
    ):
        self.store = store
        self.vault = vault
        self.oracle = oracle
        self.scheduler = scheduler
        self.network = network
        self.percentage_tolerance = percentage_tolerance
        self.max_output_addresses = max_output_addresses

    def validate(self, data: CreateExchangeInput) -> None:
        """Raise ValidationError for the first violated rule."""
        currency = data.output_currency
        if not is_supported(currency):
            raise ValidationError("output_currency", f"unsupported output currency: {currency}")

        addresses = data.output_addresses
        if not addresses:
            raise ValidationError("output_addresses", "at least one output address is required")
        if len(addresses) > self.max_output_addresses:
            raise ValidationError(
                "output_addresses",
                f"maximum {self.max_output_addresses} output addresses allowed",
            )

        for i, output in enumerate(addresses, start=1):
            if not output.address:
                raise ValidationError("output_addresses", f"address {i} is empty")
            if not validate_address(output.address, currency, self.network):
                raise ValidationError(
                    "output_addresses", f"invalid address {i} for currency {currency}"
                )

        for i, output in enumerate(addresses, start=1):
            pct = output.percentage
            if not pct.is_finite() or pct <= 0 or pct > PERCENT_TOTAL:
                raise ValidationError("percentage", f"invalid percentage for address {i}: {pct}")

        total = sum((o.percentage for o in addresses), Decimal("0"))
        if abs(total - PERCENT_TOTAL) > self.percentage_tolerance:
            raise ValidationError(
                "percentage", f"percentage allocation must equal 100%, got {total}%"
            )

        amount = data.btc_amount
        if not amount.is_finite() or amount <= 0:
            raise ValidationError("btc_amount", "amount must be greater than zero")
        if not has_at_most_eight_places(amount):
            raise ValidationError("btc_amount", "amount has more than 8 decimal places")

    async def quote(self, btc_amount: Decimal, output_currency: str) -> tuple[Decimal, Decimal]:
        """
        Quoted (fee in BTC, estimated output).

        estimated = btc_amount * btc_price * (1 - fee_rate) / output_price
        """
        fee = calculate_fee(btc_amount, output_currency)
        net_btc = btc_amount * (Decimal("1") - fee_rate_for(output_currency))
        if output_currency == BTC:
            return fee, quantize_amount(net_btc)

        converted = await self.oracle.convert_value(BTC, output_currency, net_btc)
        return fee, quantize_amount(converted)

    async def create_request(self, data: CreateExchangeInput) -> ExchangeRequest:
        """
        Validate, quote, issue a deposit address and persist a pending
        request together with its settlement job.

        Returns immediately; settlement runs in the background.
        """
        self.validate(data)

        fee, estimated = await self.quote(data.btc_amount, data.output_currency)

        payment_address = await asyncio.to_thread(self.vault.generate_deposit_address)

        now = utcnow()
        request = ExchangeRequest(
            id=str(uuid.uuid4()),
            btc_amount=data.btc_amount,
            output_currency=data.output_currency,
            output_addresses=[
                OutputAddress(address=o.address, percentage=o.percentage)
                for o in data.output_addresses
            ],
            payment_address=payment_address,
            fee=fee,
            estimated_output=estimated,
            status=STATUS_PENDING,
            created_at=now,
            updated_at=now,
        )

        try:
            await asyncio.to_thread(self.store.create_request, request, self.scheduler.new_job(request.id))
        except PersistenceError:
            # The address was never handed out; retire its key.
            try:
                await asyncio.to_thread(self.vault.deactivate, payment_address)
            except PersistenceError as e:
                logger.error("deposit_key_retire_failed", address=payment_address, error=str(e))
            raise

        logger.info(
            "exchange_request_accepted",
            request_id=request.id,
            btc_amount=str(request.btc_amount),
            output_currency=request.output_currency,
            estimated_output=str(request.estimated_output),
            outputs=len(request.output_addresses),
        )
        return request

    def get_request(self, request_id: str) -> ExchangeRequest:
        return self.store.get_request(request_id)

    def list_requests(self, limit: int = 50, offset: int = 0) -> list[ExchangeRequest]:
        return self.store.list_requests(limit=limit, offset=offset)

    @staticmethod
    def list_currencies() -> list[CurrencyView]:
        return [
            CurrencyView(
                symbol=c.symbol,
                name=c.name,
                min_amount=c.min_amount,
                max_amount=c.max_amount,
                fee_rate=c.fee_rate,
            )
            for c in SUPPORTED_CURRENCIES.values()
        ]
