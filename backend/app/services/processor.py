from __future__ import annotations
import asyncio
from dataclasses import dataclass, field
from typing import Any, Protocol
import stripe
import structlog
from app.config import settings

log = structlog.get_logger()


class ProcessorRejected(Exception):
    """The processor said no, or the request was never sent. Nothing moved."""


class ProcessorUnavailable(Exception):
    """No usable answer (timeout, connection, 5xx). The call may or may not have taken effect."""


@dataclass
class ProcessorResult:
    reference: str             # tr_..., re_..., trr_...
    status: str = "pending"    # processor's own status; never trusted as terminal
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class AccountInfo:
    account_id: str
    payouts_enabled: bool
    raw: dict[str, Any] = field(default_factory=dict)


class PaymentProcessor(Protocol):
    async def create_transfer(self, *, amount: int, currency: str, destination: str,
                              idempotency_key: str, metadata: dict[str, str]) -> ProcessorResult: ...

    async def retrieve_account(self, account_id: str) -> AccountInfo: ...

    async def create_refund(self, *, payment_reference: str, amount: int,
                            idempotency_key: str, metadata: dict[str, str]) -> ProcessorResult: ...

    async def create_transfer_reversal(self, *, transfer_reference: str, amount: int,
                                       idempotency_key: str, metadata: dict[str, str]) -> ProcessorResult: ...


class StripeProcessor:
    """Stripe Connect implementation. The SDK is blocking, so every call runs in a thread under a timeout."""

    def __init__(self, api_key: str | None = None, timeout: float | None = None):
        self.api_key = api_key or settings.stripe_secret_key
        self.timeout = timeout or settings.processor_timeout_seconds

    async def _call(self, op: str, fn, *args, **kwargs):
        if not self.api_key:
            raise ProcessorRejected("Stripe not configured")
        kwargs["api_key"] = self.api_key
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args, **kwargs), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            log.warning("processor_timeout", op=op, timeout=self.timeout)
            raise ProcessorUnavailable(f"{op} timed out after {self.timeout}s") from e
        except (stripe.CardError, stripe.InvalidRequestError, stripe.PermissionError,
                stripe.AuthenticationError) as e:
            log.warning("processor_rejected", op=op, code=getattr(e, "code", None))
            raise ProcessorRejected(e.user_message or str(e)) from e
        except stripe.StripeError as e:
            # connection errors, rate limits, 5xx: outcome unknown
            log.warning("processor_unavailable", op=op, error=type(e).__name__)
            raise ProcessorUnavailable(str(e)) from e

    async def create_transfer(self, *, amount, currency, destination, idempotency_key, metadata):
        tr = await self._call(
            "transfer", stripe.Transfer.create,
            amount=int(amount), currency=currency, destination=destination,
            metadata=metadata, idempotency_key=idempotency_key,
        )
        return ProcessorResult(reference=tr["id"], status="pending", raw=dict(tr))

    async def retrieve_account(self, account_id):
        acct = await self._call("account", stripe.Account.retrieve, account_id)
        return AccountInfo(account_id=acct["id"], payouts_enabled=bool(acct.get("payouts_enabled")), raw=dict(acct))

    async def create_refund(self, *, payment_reference, amount, idempotency_key, metadata):
        r = await self._call(
            "refund", stripe.Refund.create,
            payment_intent=payment_reference, amount=int(amount),
            metadata=metadata, idempotency_key=idempotency_key,
        )
        return ProcessorResult(reference=r["id"], status=r.get("status") or "pending", raw=dict(r))

    async def create_transfer_reversal(self, *, transfer_reference, amount, idempotency_key, metadata):
        rv = await self._call(
            "transfer_reversal", stripe.Transfer.create_reversal, transfer_reference,
            amount=int(amount), metadata=metadata, idempotency_key=idempotency_key,
        )
        return ProcessorResult(reference=rv["id"], status="pending", raw=dict(rv))


def get_processor() -> PaymentProcessor:
    return StripeProcessor()
