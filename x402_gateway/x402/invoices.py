# x402_gateway/x402/invoices.py
"""
Invoice lifecycle for x402 challenges.

Every 402 challenge records a pending invoice; a successful settlement that
names the invoice marks it paid; pending invoices past their deadline are
expired by a sweep that runs lazily on access.

Statuses: pending -> paid | expired. Transitions only leave pending.
"""
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Optional

from x402_gateway.core.config import settings

logger = logging.getLogger(__name__)

SWEEP_INTERVAL_SECONDS = 300


class InvoiceStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    EXPIRED = "expired"


@dataclass
class Invoice:
    invoice_id: str
    token_symbol: str
    amount: str
    chain_id: int
    endpoint: str
    expires_at: float
    status: InvoiceStatus = InvoiceStatus.PENDING
    payer: Optional[str] = None
    created_at: float = field(default_factory=time.time)


class InvoiceStore:
    """
    Thread-safe in-memory invoice store keyed by invoice id.

    Invoices that left the pending state are dropped once they are older
    than one TTL past their deadline, so memory stays bounded.

    Args:
        ttl_seconds: Default invoice lifetime (X402_INVOICE_TTL_SECONDS if None)
        clock: Time source returning epoch seconds
    """

    def __init__(self, ttl_seconds: Optional[int] = None, clock: Callable[[], float] = time.time):
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._invoices: Dict[str, Invoice] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    @property
    def ttl_seconds(self) -> int:
        if self._ttl_seconds is not None:
            return self._ttl_seconds
        return settings.X402_INVOICE_TTL_SECONDS

    def create(
        self,
        invoice_id: str,
        token_symbol: str,
        amount: str,
        chain_id: int,
        endpoint: str,
        expires_in: Optional[int] = None,
    ) -> Invoice:
        """Record a pending invoice; an existing id is left untouched."""
        now = self._clock()
        self._maybe_sweep(now)
        ttl = expires_in if expires_in is not None else self.ttl_seconds

        with self._lock:
            existing = self._invoices.get(invoice_id)
            if existing is not None:
                return existing
            invoice = Invoice(
                invoice_id=invoice_id,
                token_symbol=token_symbol,
                amount=amount,
                chain_id=chain_id,
                endpoint=endpoint,
                expires_at=now + ttl,
                created_at=now,
            )
            self._invoices[invoice_id] = invoice
            return invoice

    def mark_paid(self, invoice_id: str, payer: Optional[str] = None) -> bool:
        """
        Move a pending invoice to paid.

        Returns:
            True if the invoice was pending and is now paid
        """
        with self._lock:
            invoice = self._invoices.get(invoice_id)
            if invoice is None or invoice.status != InvoiceStatus.PENDING:
                return False
            invoice.status = InvoiceStatus.PAID
            if payer:
                invoice.payer = payer
        logger.info(f"Invoice {invoice_id} paid by {payer or 'unknown payer'}")
        return True

    def expire_invoices(self) -> int:
        """Expire every pending invoice past its deadline; returns the count."""
        now = self._clock()
        expired = 0
        with self._lock:
            for invoice in self._invoices.values():
                if invoice.status == InvoiceStatus.PENDING and invoice.expires_at < now:
                    invoice.status = InvoiceStatus.EXPIRED
                    expired += 1
        if expired:
            logger.info(f"Expired {expired} invoice(s)")
        return expired

    def get(self, invoice_id: str) -> Optional[Invoice]:
        self._maybe_sweep(self._clock())
        with self._lock:
            return self._invoices.get(invoice_id)

    def stats(self) -> Dict[str, int]:
        """Invoice counts by status."""
        counts = {status.value: 0 for status in InvoiceStatus}
        with self._lock:
            for invoice in self._invoices.values():
                counts[invoice.status.value] += 1
        return counts

    def sweep(self) -> int:
        """Expire overdue invoices and drop old closed ones; returns the expired count."""
        expired = self.expire_invoices()
        cutoff = self._clock() - self.ttl_seconds
        with self._lock:
            stale = [
                invoice_id for invoice_id, invoice in self._invoices.items()
                if invoice.status != InvoiceStatus.PENDING and invoice.expires_at < cutoff
            ]
            for invoice_id in stale:
                del self._invoices[invoice_id]
        if stale:
            logger.debug(f"Dropped {len(stale)} closed invoice(s)")
        return expired

    def _maybe_sweep(self, now: float) -> None:
        with self._lock:
            if now - self._last_sweep < SWEEP_INTERVAL_SECONDS:
                return
            self._last_sweep = now
        self.sweep()


# Global invoice store instance
_invoice_store: Optional[InvoiceStore] = None
_invoice_store_lock = threading.Lock()


def get_invoice_store() -> InvoiceStore:
    global _invoice_store

    if _invoice_store is None:
        with _invoice_store_lock:
            if _invoice_store is None:
                _invoice_store = InvoiceStore()

    return _invoice_store


def reset_invoice_store() -> None:
    """Drop the global invoice store (useful for testing)."""
    global _invoice_store
    with _invoice_store_lock:
        _invoice_store = None
